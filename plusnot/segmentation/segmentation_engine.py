"""
Asynchronous Person Segmentation.

Turns camera frames into foreground masks on a dedicated worker thread:
1. Resize to model input and normalize per variant
2. Run inference, extract the foreground probability map
3. Post-process: threshold -> erode -> blur
4. Optionally AND with a background-difference mask
5. Resize to the requested output size and publish
"""

from __future__ import annotations

import time
import threading
from pathlib import Path
from typing import Any, Callable, Optional, Tuple
import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger

from plusnot.core.contracts import (
    Settings,
    SegmentationModel,
    DebugSnapshot,
    model_spec,
)
from plusnot.core.mailbox import FrameMailbox
from plusnot.core.lifecycle import join_or_abandon
from plusnot.segmentation.model_session import (
    create_session,
    prepare_input,
    extract_probability,
    run_session,
)
from plusnot.segmentation.mask_processor import (
    post_process_with,
    compute_diff_mask,
    fuse_with_diff,
    otsu_threshold,
    silhouette_quality,
)


SessionFactory = Callable[[Path, int], Any]


class SegmentationEngine:
    """
    Single-flight segmentation worker.

    Guarantees:
    - At most one inference runs at a time
    - submit_frame() never blocks; frames arriving while busy are dropped
    - Published masks are new read-only arrays, swapped in by reference
    - The model cannot be swapped mid-inference (model-switch lock)
    - Setting or clearing the reference never waits on inference; each
      inference uses the reference current when it started

    Usage:
        engine = SegmentationEngine(settings)
        engine.load_model(SegmentationModel.MEDIAPIPE)
        engine.start()

        # capture thread:
        engine.submit_frame(frame, w, h)
        mask = engine.get_latest_mask()

        engine.stop()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        models_dir: Path | str = "models",
        session_factory: Optional[SessionFactory] = None,
        join_timeout_s: float = 2.0,
        idle_sleep_s: float = 0.001,
    ):
        """
        Initialize segmentation engine.

        Args:
            settings: Shared tunables (read every inference)
            models_dir: Directory holding the .onnx assets
            session_factory: Builds a session from (path, threads);
                defaults to ONNX Runtime
            join_timeout_s: Bounded wait when stopping the worker
            idle_sleep_s: Worker sleep while the mailbox is empty
        """
        self.settings = settings or Settings()
        self.models_dir = Path(models_dir)
        self._session_factory = session_factory or create_session
        self.join_timeout_s = join_timeout_s
        self.idle_sleep_s = idle_sleep_s

        # Model (guarded by the switch lock)
        self._switch_lock = threading.Lock()
        self._session: Any = None
        self._active_model = SegmentationModel.MEDIAPIPE

        # Background reference, swapped by reference (None = diff off).
        # Its own lock: writers never wait on an in-flight inference.
        self._reference_lock = threading.Lock()
        self._reference: Optional[NDArray[np.uint8]] = None

        # Hand-off (also tracks the busy flag)
        self._mailbox = FrameMailbox()

        # Published results (swapped by reference)
        self._latest_mask: Optional[NDArray[np.uint8]] = None
        self._debug_snapshot: Optional[DebugSnapshot] = None

        # Worker
        self._running = False
        self._thread: Optional[threading.Thread] = None

        # Single-flight bookkeeping
        self._inflight = 0
        self._max_inflight = 0

        # Performance
        self._fps = 0.0
        self._process_count = 0
        self._last_fps_time = time.time()

    # ============================================================
    # MODEL MANAGEMENT
    # ============================================================

    def load_model(self, variant: SegmentationModel) -> bool:
        """
        (Re)load a model variant.

        Blocks until any in-flight inference finishes, then swaps the
        session. The previous model stays active on failure.

        Returns:
            True if the model is now active
        """
        spec = model_spec(variant)
        model_path = self.models_dir / spec.file_name

        if not model_path.is_file():
            logger.warning(f"Model asset missing: {model_path}")
            return False

        with self._switch_lock:
            try:
                session = self._session_factory(
                    model_path, int(self.settings.worker_thread_count)
                )
            except Exception as e:
                logger.error(f"Failed to load {variant.value} from {model_path}: {e}")
                return False

            self._session = session
            self._active_model = variant

        logger.info(f"Segmentation model loaded: {variant.value} ({spec.input_size}px)")
        return True

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def start(self):
        """Start the worker thread."""
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(
            target=self._worker,
            name="Segmentation",
            daemon=True,
        )
        self._thread.start()
        logger.info("Segmentation worker started")

    def stop(self) -> bool:
        """
        Stop the worker.

        Returns:
            True if the worker exited, False if it was abandoned
        """
        self._running = False
        stopped = join_or_abandon(self._thread, self.join_timeout_s)
        if stopped:
            self._thread = None
        return stopped

    def dispose(self):
        """Stop the worker and release the session and reference."""
        stopped = self.stop()

        # An abandoned worker may still hold the lock inside inference
        lock_timeout = -1 if stopped else self.join_timeout_s
        if self._switch_lock.acquire(timeout=lock_timeout):
            try:
                self._session = None
            finally:
                self._switch_lock.release()
        else:
            logger.warning("Model session left to the abandoned segmentation worker")

        with self._reference_lock:
            self._reference = None
        self._mailbox.clear()
        self._latest_mask = None
        self._debug_snapshot = None

    # ============================================================
    # FRAME HAND-OFF
    # ============================================================

    def submit_frame(self, frame: NDArray[np.uint8], output_width: int, output_height: int) -> bool:
        """
        Offer a frame to the worker without blocking.

        While the worker is computing this is a no-op: the frame is
        dropped, not queued. Otherwise it is copied into the mailbox,
        replacing any frame not yet picked up.

        Returns:
            True if the frame was accepted
        """
        return self._mailbox.put_if_idle(frame, output_width, output_height)

    def get_latest_mask(self) -> Optional[NDArray[np.uint8]]:
        """Most recently published mask (H, W), or None."""
        return self._latest_mask

    def get_debug_snapshot(self) -> Optional[DebugSnapshot]:
        """Intermediate masks of the last inference run with debugging on."""
        return self._debug_snapshot

    # ============================================================
    # BACKGROUND REFERENCE
    # ============================================================

    def set_reference_background(self, image: NDArray[np.uint8]):
        """Enable diff fusion against a copy of `image` (BGR)."""
        reference = np.array(image, dtype=np.uint8, copy=True)
        with self._reference_lock:
            self._reference = reference
        logger.info(f"Reference background set ({reference.shape[1]}x{reference.shape[0]})")

    def clear_reference_background(self):
        with self._reference_lock:
            self._reference = None
        logger.info("Reference background cleared")

    # ============================================================
    # ANALYSIS
    # ============================================================

    @staticmethod
    def compute_auto_threshold(mask: NDArray[np.uint8]) -> int:
        """Otsu threshold of a mask's intensity histogram."""
        return otsu_threshold(mask)

    @staticmethod
    def evaluate_silhouette_quality(mask: NDArray[np.uint8]) -> Tuple[int, str]:
        """Score 0-100 and coarse description of a foreground mask."""
        return silhouette_quality(mask)

    # ============================================================
    # WORKER
    # ============================================================

    def _worker(self):
        """Pull frames from the mailbox until stopped."""
        work: Optional[NDArray[np.uint8]] = None

        while self._running:
            item = self._mailbox.take_into(work)
            if item is None:
                time.sleep(self.idle_sleep_s)
                continue

            work, output_w, output_h = item
            try:
                mask = self._segment(work, output_w, output_h)
                if mask is not None:
                    self._latest_mask = mask
                    self._update_fps()
            except Exception:
                logger.exception("Segmentation failed; keeping previous mask")
            finally:
                self._mailbox.release()

        logger.info("Segmentation worker stopped")

    def _segment(
        self,
        frame: NDArray[np.uint8],
        output_w: int,
        output_h: int,
    ) -> Optional[NDArray[np.uint8]]:
        """Run one full inference + post-processing pass."""
        with self._switch_lock:
            session = self._session
            if session is None:
                return None

            # One snapshot per inference
            reference = self._reference

            self._inflight += 1
            self._max_inflight = max(self._max_inflight, self._inflight)
            try:
                spec = model_spec(self._active_model)

                tensor = prepare_input(frame, spec)
                output = run_session(session, tensor)
                raw = extract_probability(output, spec)

                post = post_process_with(raw, self.settings)

                diff = None
                fused = post
                if reference is not None:
                    diff = compute_diff_mask(
                        frame,
                        reference,
                        threshold=int(self.settings.diff_threshold),
                        dilate=int(self.settings.diff_dilate),
                        mask_size=(post.shape[1], post.shape[0]),
                    )
                    fused = fuse_with_diff(post, diff)

                final = cv2.resize(fused, (output_w, output_h))
                final.setflags(write=False)

                if self.settings.debug_enabled:
                    self._debug_snapshot = DebugSnapshot(
                        raw_mask=raw,
                        post_mask=post,
                        diff_mask=diff,
                        final_mask=final,
                        raw_size=(spec.input_size, spec.input_size),
                        final_size=(output_w, output_h),
                    )
                return final
            finally:
                self._inflight -= 1

    def _update_fps(self):
        self._process_count += 1
        now = time.time()
        elapsed = now - self._last_fps_time
        if elapsed >= 1.0:
            self._fps = self._process_count / elapsed
            self._process_count = 0
            self._last_fps_time = now

    # ============================================================
    # PROPERTIES
    # ============================================================

    @property
    def active_model(self) -> SegmentationModel:
        return self._active_model

    @property
    def has_model(self) -> bool:
        return self._session is not None

    @property
    def has_reference_background(self) -> bool:
        return self._reference is not None

    @property
    def is_busy(self) -> bool:
        return self._mailbox.is_busy

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending_frame(self):
        """Mailbox content (None when empty)."""
        return self._mailbox.peek()

    @property
    def max_concurrent_inferences(self) -> int:
        return self._max_inflight

    @property
    def fps(self) -> float:
        return self._fps
