"""
Thread lifecycle helpers.

Threads stop cooperatively: the owner clears a running flag and joins
with a bounded timeout. A thread that has not observed the flag in time
is abandoned, never killed. Whatever native resource it holds (camera
handle, model session) is released only when it eventually exits.
"""

from __future__ import annotations

import threading
from typing import Optional
from loguru import logger


def join_or_abandon(thread: Optional[threading.Thread], timeout_s: float) -> bool:
    """
    Join a thread with a bounded timeout.

    Args:
        thread: Thread to join (None counts as already stopped)
        timeout_s: Maximum wait in seconds

    Returns:
        True if the thread exited, False if it was abandoned
    """
    if thread is None or thread is threading.current_thread():
        return True

    thread.join(timeout=timeout_s)

    if thread.is_alive():
        logger.warning(
            f"Thread '{thread.name}' did not stop within {timeout_s:.1f}s; "
            "abandoning it (its resources are released when it exits)"
        )
        return False
    return True
