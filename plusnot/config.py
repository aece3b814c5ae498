"""
Configuration for the frame pipeline.

Defaults live in the dataclasses below; a YAML file (config/settings.yaml)
overrides any subset of them, and command-line flags override the file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import yaml
from loguru import logger

from plusnot.core.contracts import Settings, SegmentationModel


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "settings.yaml"

DEFAULT_MODEL_PRIORITY = [
    SegmentationModel.MEDIAPIPE,
    SegmentationModel.MODNET,
    SegmentationModel.SINET,
]


@dataclass
class PipelineConfig:
    """Configuration for the pipeline."""
    # Video settings
    video_device: int = 0
    video_width: int = 640
    video_height: int = 480
    video_fps: int = 30

    # Segmentation
    models_dir: str = "models"
    model_priority: List[SegmentationModel] = field(
        default_factory=lambda: list(DEFAULT_MODEL_PRIORITY)
    )
    segmentation_interval_frames: int = 1  # Submit every Nth frame

    # Compositing
    background_image: Optional[str] = "assets/default_bg.jpg"
    hud_enabled: bool = True
    waveform_samples: int = 256
    error_frame_size: Tuple[int, int] = (1280, 720)

    # Lifecycle
    reference_frames: int = 15
    join_timeout_s: float = 2.0
    read_retry_sleep_s: float = 0.001

    # Live tunables
    settings: Settings = field(default_factory=Settings)


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    return value


def config_from_dict(raw: Dict[str, Any]) -> PipelineConfig:
    """
    Build a PipelineConfig from a parsed YAML mapping.

    Missing sections or keys keep their defaults.
    """
    config = PipelineConfig()

    video = _section(raw, "video")
    config.video_device = int(video.get("device_index", config.video_device))
    config.video_width = int(video.get("width", config.video_width))
    config.video_height = int(video.get("height", config.video_height))
    config.video_fps = int(video.get("fps", config.video_fps))

    seg = _section(raw, "segmentation")
    config.models_dir = str(seg.get("models_dir", config.models_dir))
    if "model_priority" in seg:
        config.model_priority = [
            SegmentationModel.from_name(str(name)) for name in seg["model_priority"]
        ]
        if not config.model_priority:
            raise ValueError("segmentation.model_priority must name at least one model")
    config.segmentation_interval_frames = max(
        1, int(seg.get("submit_interval", config.segmentation_interval_frames))
    )

    s = config.settings
    s.blur_size = int(seg.get("blur_size", s.blur_size))
    s.mask_threshold = int(seg.get("mask_threshold", s.mask_threshold))
    s.feather_erode = int(seg.get("feather_erode", s.feather_erode))
    s.diff_threshold = int(seg.get("diff_threshold", s.diff_threshold))
    s.diff_dilate = int(seg.get("diff_dilate", s.diff_dilate))
    s.stability = float(seg.get("stability", s.stability))
    s.worker_thread_count = int(seg.get("worker_threads", s.worker_thread_count))
    s.debug_enabled = bool(seg.get("debug", s.debug_enabled))

    comp = _section(raw, "compositing")
    if "background_image" in comp:
        bg = comp["background_image"]
        config.background_image = str(bg) if bg else None
    config.hud_enabled = bool(comp.get("hud", config.hud_enabled))
    config.waveform_samples = int(comp.get("waveform_samples", config.waveform_samples))

    pipe = _section(raw, "pipeline")
    config.reference_frames = int(pipe.get("reference_frames", config.reference_frames))
    config.join_timeout_s = float(pipe.get("join_timeout_s", config.join_timeout_s))

    return config


def load_config(config_path: Optional[Path | str] = None) -> PipelineConfig:
    """
    Load configuration from a YAML file.

    Falls back to config/settings.yaml, then to built-in defaults.
    """
    candidates = [Path(config_path)] if config_path else []
    candidates.append(DEFAULT_CONFIG_PATH)

    for path in candidates:
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
            if not isinstance(raw, dict):
                raise ValueError(f"Config file {path} must contain a mapping")
            logger.info(f"Configuration loaded from {path}")
            return config_from_dict(raw)
        if config_path and path == Path(config_path):
            logger.warning(f"Config file not found: {path}, using defaults")

    return PipelineConfig()
