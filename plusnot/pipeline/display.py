"""
Display-thread hand-off.

The capture thread never touches the visible surface. It posts small
callables to the UI thread, which runs them between window events.
"""

from __future__ import annotations

from queue import Queue, Empty
from typing import Callable, Optional
import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger


class UIDispatcher:
    """
    Fire-and-forget queue of callables drained by the UI thread.

    The queue itself is unbounded; the pipeline bounds it by keeping at
    most one frame in flight.
    """

    def __init__(self):
        self._queue: Queue[Callable[[], None]] = Queue()

    def begin_invoke(self, fn: Callable[[], None]):
        """Schedule `fn` on the UI thread and return immediately."""
        self._queue.put(fn)

    def process_pending(self, max_items: Optional[int] = None) -> int:
        """
        Run queued callables on the calling (UI) thread.

        A failing callable is logged and does not stop the rest.

        Returns:
            Number of callables run
        """
        ran = 0
        while max_items is None or ran < max_items:
            try:
                fn = self._queue.get_nowait()
            except Empty:
                break
            try:
                fn()
            except Exception:
                logger.exception("UI callback failed")
            ran += 1
        return ran

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class DisplayTarget:
    """Platform-visible image the UI thread presents."""

    def __init__(self):
        self.source: Optional[NDArray[np.uint8]] = None
        self.fps_text: str = ""
        self.presented_frames = 0

    def set_source(self, surface: NDArray[np.uint8]):
        self.source = surface

    def to_bgr(self) -> Optional[NDArray[np.uint8]]:
        """Current surface converted for cv2.imshow, or None."""
        if self.source is None:
            return None
        return cv2.cvtColor(self.source, cv2.COLOR_BGRA2BGR)
