"""
Single-slot frame mailbox.

Hand-off between the capture thread and the segmentation worker.
Not a queue: a new frame replaces whatever is pending, so memory stays
bounded and the worker never backs up.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np
from numpy.typing import NDArray


@dataclass
class PendingFrame:
    """A frame waiting for the worker, with the requested output size."""
    frame: NDArray[np.uint8]
    output_width: int
    output_height: int


class FrameMailbox:
    """
    Mutex-guarded optional-value slot.

    Guarantees:
    - At most one pending frame
    - put() copies into a reusable buffer, the caller keeps its own
    - take() empties the slot and marks the worker busy until release()
    - put_if_idle() refuses frames while the worker is busy
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Optional[PendingFrame] = None
        self._buffer: Optional[NDArray[np.uint8]] = None
        self._busy = False

    def _store(self, frame: NDArray[np.uint8], output_width: int, output_height: int):
        # Caller holds the lock
        if (
            self._buffer is None
            or self._buffer.shape != frame.shape
            or self._buffer.dtype != frame.dtype
        ):
            self._buffer = np.empty_like(frame)
        np.copyto(self._buffer, frame)
        self._pending = PendingFrame(self._buffer, output_width, output_height)

    def put(self, frame: NDArray[np.uint8], output_width: int, output_height: int):
        """Copy a frame into the slot, replacing anything pending."""
        with self._lock:
            self._store(frame, output_width, output_height)

    def put_if_idle(self, frame: NDArray[np.uint8], output_width: int, output_height: int) -> bool:
        """Like put(), but a no-op returning False while the worker is busy."""
        with self._lock:
            if self._busy:
                return False
            self._store(frame, output_width, output_height)
            return True

    def take_into(self, work: Optional[NDArray[np.uint8]]) -> Optional[Tuple[NDArray[np.uint8], int, int]]:
        """
        Move the pending frame into a worker-owned buffer and mark the
        worker busy.

        Args:
            work: Reusable work buffer, reallocated if its shape differs

        Returns:
            (work_buffer, output_width, output_height) or None if empty
        """
        with self._lock:
            pending = self._pending
            if pending is None:
                return None
            if work is None or work.shape != pending.frame.shape or work.dtype != pending.frame.dtype:
                work = np.empty_like(pending.frame)
            np.copyto(work, pending.frame)
            self._pending = None
            self._busy = True
            return (work, pending.output_width, pending.output_height)

    def release(self):
        """Worker finished the taken frame."""
        with self._lock:
            self._busy = False

    def peek(self) -> Optional[PendingFrame]:
        """Current slot content (for diagnostics and tests)."""
        with self._lock:
            return self._pending

    def clear(self):
        with self._lock:
            self._pending = None
            self._buffer = None
            self._busy = False

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    @property
    def is_busy(self) -> bool:
        return self._busy
