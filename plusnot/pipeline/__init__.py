"""
Main Pipeline Module.

Orchestrates capture, segmentation, compositing and display hand-off.
"""

from .orchestrator import FramePipeline
from .display import UIDispatcher, DisplayTarget
