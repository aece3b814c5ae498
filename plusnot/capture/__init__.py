"""
Video Capture Module.

Responsibilities:
- Camera acquisition
- Reference frame averaging
"""

from .video_capture import FrameSource
from .reference_capture import ReferenceAccumulator
