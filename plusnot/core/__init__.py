"""
Core contracts and concurrency primitives shared by the frame pipeline.
"""

from .contracts import (
    Settings,
    SegmentationModel,
    ModelSpec,
    Normalization,
    DebugSnapshot,
    CaptureState,
    WaveformSource,
    model_spec,
)
from .mailbox import FrameMailbox
from .lifecycle import join_or_abandon
