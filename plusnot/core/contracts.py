"""
Core data contracts for the frame pipeline.

All components share these definitions for:
- Tunable settings read every frame
- The closed set of segmentation model variants
- Debug snapshots of intermediate mask stages
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional, Tuple, Protocol
import numpy as np
from numpy.typing import NDArray


# ============================================================
# ENUMERATIONS
# ============================================================

class SegmentationModel(Enum):
    """Supported person segmentation networks."""
    MODNET = "MODNet"
    MEDIAPIPE = "MediaPipe"
    SINET = "SINet"

    @classmethod
    def from_name(cls, name: str) -> SegmentationModel:
        """Look up a variant by its display name (case-insensitive)."""
        for variant in cls:
            if variant.value.lower() == name.strip().lower():
                return variant
        raise ValueError(f"Unknown segmentation model: {name!r}")


class Normalization(Enum):
    """Pixel normalization applied before inference."""
    ZERO_CENTERED = auto()  # [-1, 1]
    UNIT = auto()           # [0, 1]


class CaptureState(Enum):
    """Reference capture state machine."""
    IDLE = "idle"
    ACCUMULATING = "accumulating"


# ============================================================
# MODEL VARIANTS
# ============================================================

@dataclass(frozen=True)
class ModelSpec:
    """Static description of a model variant."""
    file_name: str
    input_size: int
    normalization: Normalization
    # Output channel holding the foreground probability, None = flat map
    foreground_channel: Optional[int] = None


def model_spec(variant: SegmentationModel) -> ModelSpec:
    """Resolve the asset name, input size and tensor layout of a variant."""
    if variant is SegmentationModel.MODNET:
        return ModelSpec("modnet.onnx", 512, Normalization.ZERO_CENTERED)
    if variant is SegmentationModel.MEDIAPIPE:
        return ModelSpec("mediapipe_selfie.onnx", 256, Normalization.UNIT)
    if variant is SegmentationModel.SINET:
        return ModelSpec("sinet.onnx", 320, Normalization.UNIT, foreground_channel=1)
    raise ValueError(f"Unhandled segmentation model: {variant}")


# ============================================================
# SETTINGS
# ============================================================

@dataclass
class Settings:
    """
    Mutable tunables shared by the UI, pipeline and segmentation threads.

    Every field is read standalone once per frame and may be written at any
    time from any thread. Attribute assignment is atomic, so each field is
    independently consistent; nothing spans fields.
    """
    blur_size: int = 7            # 0 = off, odd kernel otherwise
    mask_threshold: int = 0       # 0 = soft mask, 1-254 = hard cutoff
    feather_erode: int = 0        # pixels shaved off the mask edge
    diff_threshold: int = 25      # background-diff binarization level
    diff_dilate: int = 5          # diff mask dilation kernel side, 0 = off
    stability: float = 0.3        # weight of the previous smoothed mask
    worker_thread_count: int = 4  # inference threads, applied on model load
    debug_enabled: bool = False


# ============================================================
# DEBUG DATA
# ============================================================

@dataclass(frozen=True)
class DebugSnapshot:
    """Intermediate masks of one inference, for on-screen diagnostics."""
    raw_mask: NDArray[np.uint8]
    post_mask: NDArray[np.uint8]
    diff_mask: Optional[NDArray[np.uint8]]
    final_mask: NDArray[np.uint8]
    raw_size: Tuple[int, int]    # (width, height) at model resolution
    final_size: Tuple[int, int]  # (width, height) at output resolution


# ============================================================
# COLLABORATORS
# ============================================================

class WaveformSource(Protocol):
    """Audio collaborator that fills a buffer with recent samples."""

    def get_waveform_snapshot(self, out: NDArray[np.float32]) -> None:
        ...
