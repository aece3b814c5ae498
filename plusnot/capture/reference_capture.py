"""
Reference Frame Capture.

Averages a fixed window of camera frames into a clean reference image:
- the empty-room background used for diff fusion
- the "human" reference used to score silhouette quality
"""

from __future__ import annotations

import threading
from typing import Optional, Callable
import numpy as np
from numpy.typing import NDArray
from loguru import logger

from plusnot.core.contracts import CaptureState


StatusCallback = Callable[[str], None]


class ReferenceAccumulator:
    """
    Idle -> Accumulating -> Idle state machine.

    start() may be called from any thread; add_frame() is called only by
    the capture thread, which owns the float accumulator while
    accumulating. The lock covers the short state updates only.
    """

    def __init__(
        self,
        frames_needed: int = 15,
        done_message: str = "Background captured!",
    ):
        """
        Initialize accumulator.

        Args:
            frames_needed: Number of frames averaged into one reference
            done_message: Terminal status text sent on completion
        """
        if frames_needed < 1:
            raise ValueError("frames_needed must be at least 1")

        self.frames_needed = frames_needed
        self.done_message = done_message

        self._lock = threading.Lock()
        self._state = CaptureState.IDLE
        self._accumulator: Optional[NDArray[np.float32]] = None
        self._count = 0
        self._status_callback: Optional[StatusCallback] = None

    def start(self, status_callback: Optional[StatusCallback] = None):
        """Reset the accumulator and begin a new capture window."""
        with self._lock:
            self._status_callback = status_callback
            self._accumulator = None
            self._count = 0
            self._state = CaptureState.ACCUMULATING

    def cancel(self):
        with self._lock:
            self._state = CaptureState.IDLE
            self._accumulator = None
            self._count = 0

    def add_frame(self, frame: NDArray[np.uint8]) -> Optional[NDArray[np.uint8]]:
        """
        Accumulate one frame.

        Returns:
            The finalized uint8 reference when this frame completes the
            window, otherwise None
        """
        with self._lock:
            if self._state is not CaptureState.ACCUMULATING:
                return None

            if self._accumulator is None or self._accumulator.shape != frame.shape:
                # Resolution changed mid-capture: restart the window
                self._accumulator = np.zeros(frame.shape, dtype=np.float32)
                self._count = 0

            self._accumulator += frame.astype(np.float32)
            self._count += 1
            count = self._count
            callback = self._status_callback

            result = None
            if count >= self.frames_needed:
                averaged = self._accumulator / float(count)
                result = np.clip(np.rint(averaged), 0, 255).astype(np.uint8)
                self._accumulator = None
                self._count = 0
                self._state = CaptureState.IDLE

        if result is not None:
            logger.info(f"{self.done_message} ({count} frames averaged)")
            if callback is not None:
                callback(self.done_message)
        elif callback is not None:
            callback(f"Capturing... {count}/{self.frames_needed}")

        return result

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def is_accumulating(self) -> bool:
        return self._state is CaptureState.ACCUMULATING

    @property
    def frame_count(self) -> int:
        return self._count
