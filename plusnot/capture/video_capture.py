"""
Camera Frame Source.

Handles:
- Opening the camera device at a requested resolution
- Reading BGR frames into a reusable buffer
- Best-effort access to the driver's native settings dialog
"""

from __future__ import annotations

import os
from typing import Optional, Tuple
import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger


class FrameSource:
    """
    Camera frame source backed by OpenCV.

    Guarantees:
    - Never raises from open() or read_frame()
    - Open failure is reported via the return value and `error`
    - Read failures are transient: the caller retries
    """

    def __init__(self, fps: int = 30, backend: Optional[int] = None):
        """
        Initialize frame source.

        Args:
            fps: Requested camera frame rate
            backend: OpenCV capture API, None for platform default
        """
        self.fps = fps
        self.backend = backend
        if self.backend is None and os.name == 'nt':
            self.backend = cv2.CAP_DSHOW

        self._capture: Optional[cv2.VideoCapture] = None
        self._device_index = 0
        self.error: Optional[str] = None

    def open(self, device_index: int = 0, width: int = 640, height: int = 480) -> bool:
        """
        Open the camera.

        Returns:
            True if the device is open and streaming
        """
        self.close()
        self._device_index = device_index
        self.error = None

        try:
            if self.backend is not None:
                capture = cv2.VideoCapture(device_index, self.backend)
            else:
                capture = cv2.VideoCapture(device_index)

            if not capture.isOpened():
                capture.release()
                self.error = f"Camera {device_index} busy or unavailable."
                logger.error(self.error)
                return False

            capture.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
            capture.set(cv2.CAP_PROP_FPS, self.fps)
            # Keep the driver queue short so frames stay fresh
            capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)

            self._capture = capture
            actual_w, actual_h = self.frame_size
            logger.info(
                f"Camera {device_index} opened: {actual_w}x{actual_h} @ "
                f"{capture.get(cv2.CAP_PROP_FPS):.0f}fps"
            )
            return True

        except cv2.error as e:
            self.error = f"Camera {device_index} failed to open: {e}"
            logger.error(self.error)
            self._capture = None
            return False

    def read_frame(
        self,
        buffer: Optional[NDArray[np.uint8]] = None,
    ) -> Tuple[bool, Optional[NDArray[np.uint8]]]:
        """
        Read the next frame, reusing `buffer` when its shape matches.

        Returns:
            (ok, frame) - ok is False on a transient read failure
        """
        if self._capture is None:
            return (False, None)

        try:
            ok, frame = self._capture.read(buffer)
        except cv2.error as e:
            logger.debug(f"Frame read failed: {e}")
            return (False, None)

        if not ok or frame is None or frame.size == 0:
            return (False, None)
        return (True, frame)

    def request_native_settings_dialog(self):
        """Ask the driver to show its settings dialog (DirectShow only)."""
        if self._capture is None:
            return
        try:
            self._capture.set(cv2.CAP_PROP_SETTINGS, 1)
        except cv2.error as e:
            logger.debug(f"Camera settings dialog not supported: {e}")

    def close(self):
        """Release the camera."""
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info(f"Camera {self._device_index} released")

    @property
    def is_open(self) -> bool:
        return self._capture is not None and self._capture.isOpened()

    @property
    def frame_size(self) -> Tuple[int, int]:
        """Get actual frame size (width, height)."""
        if self._capture is not None:
            return (
                int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH)),
                int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            )
        return (0, 0)
