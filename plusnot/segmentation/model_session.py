"""
ONNX Runtime model sessions.

Handles:
- Session creation with thread and provider options
- Per-variant input normalization (NCHW, RGB)
- Per-variant foreground channel extraction
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Sequence
import numpy as np
from numpy.typing import NDArray
import cv2
import onnxruntime as ort
from loguru import logger

from plusnot.core.contracts import ModelSpec, Normalization


# Preferred execution providers, fastest first
PREFERRED_PROVIDERS = [
    'CUDAExecutionProvider',
    'CPUExecutionProvider',
]


def select_providers() -> List[str]:
    """Available providers in preference order (CPU always last)."""
    available = ort.get_available_providers()
    providers = [p for p in PREFERRED_PROVIDERS if p in available]
    return providers or ['CPUExecutionProvider']


def create_session(model_path: Path, worker_thread_count: int) -> Any:
    """
    Create an inference session for a model file.

    Args:
        model_path: Path to the .onnx asset
        worker_thread_count: Requested intra-op threads (clamped 1-16)

    Returns:
        onnxruntime.InferenceSession
    """
    threads = int(np.clip(worker_thread_count, 1, 16))

    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    options.intra_op_num_threads = threads
    options.inter_op_num_threads = max(1, threads // 2)
    options.enable_mem_pattern = True

    providers = select_providers()
    logger.debug(f"Creating session for {model_path.name} ({threads} threads, {providers})")
    return ort.InferenceSession(str(model_path), sess_options=options, providers=providers)


def prepare_input(frame_bgr: NDArray[np.uint8], spec: ModelSpec) -> NDArray[np.float32]:
    """
    Resize and normalize a BGR frame into a 1x3xSxS RGB tensor.

    ZERO_CENTERED maps [0, 255] to [-1, 1]; UNIT maps it to [0, 1].
    """
    size = spec.input_size
    resized = cv2.resize(frame_bgr, (size, size))
    rgb = resized[:, :, ::-1].astype(np.float32)

    if spec.normalization is Normalization.ZERO_CENTERED:
        rgb = (rgb - 127.5) / 127.5
    else:
        rgb = rgb / 255.0

    return np.ascontiguousarray(rgb.transpose(2, 0, 1)[np.newaxis, ...])


def extract_probability(output: NDArray[np.float32], spec: ModelSpec) -> NDArray[np.uint8]:
    """
    Pull the single-channel foreground map out of the model output.

    Multi-channel outputs (1xCxSxS) use `spec.foreground_channel`; flat
    outputs take the first S*S values in row-major order.

    Returns:
        uint8 mask (S, S), probability * 255 truncated
    """
    size = spec.input_size
    output = np.asarray(output, dtype=np.float32)

    if spec.foreground_channel is not None:
        prob = output.reshape(output.shape[0], -1, size, size)[0, spec.foreground_channel]
    else:
        flat = output.ravel()
        if flat.size < size * size:
            raise ValueError(
                f"Model output has {flat.size} values, expected at least {size * size}"
            )
        prob = flat[: size * size].reshape(size, size)

    return (np.clip(prob, 0.0, 1.0) * 255.0).astype(np.uint8)


def run_session(session: Any, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
    """Run a session on its first input and return the first output."""
    input_name = session.get_inputs()[0].name
    outputs: Sequence[NDArray[np.float32]] = session.run(None, {input_name: tensor})
    return outputs[0]
