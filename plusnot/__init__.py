"""
plusnot - Real-time Background Replacement

Captures a live camera feed, separates the person from the room with a
neural segmentation model, and composites them onto a replacement
background at camera frame rate.

Top Priorities (strict order):
1. Never block the capture loop on inference or display
2. Drop frames rather than queue them
3. Stable, flicker-free masks
4. Keep running when the camera or a model is missing
"""

__version__ = "0.1.0"
__author__ = "plusnot Team"
