"""
Person segmentation.

Responsibilities:
- ONNX model sessions per variant
- Asynchronous single-flight inference
- Mask post-processing and background-diff fusion
- Auto-threshold and silhouette scoring
"""

from .segmentation_engine import SegmentationEngine
from . import mask_processor
