"""
Frame Pipeline Orchestrator.

Runs the capture loop on its own thread, in strict order per frame:

1. Read a camera frame (retry quietly on failure)
2. Skip the frame if the previous one has not reached the display yet
3. Feed reference captures (segmentation paused while capturing)
4. Submit to the segmentation worker and fetch the latest mask
5. Temporally smooth the mask and layer the manual override
6. Compose offscreen (background, person, overlays)
7. Hand the finished frame to the UI thread
"""

from __future__ import annotations

import time
import threading
from functools import partial
from pathlib import Path
from typing import Callable, List, Optional, Tuple
import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger

from plusnot.config import PipelineConfig
from plusnot.core.contracts import SegmentationModel, WaveformSource
from plusnot.core.lifecycle import join_or_abandon
from plusnot.capture.video_capture import FrameSource
from plusnot.capture.reference_capture import ReferenceAccumulator, StatusCallback
from plusnot.segmentation.segmentation_engine import SegmentationEngine
from plusnot.segmentation.mask_processor import (
    temporal_smooth,
    apply_manual_mask,
    silhouette_difference,
    otsu_threshold,
)
from plusnot.rendering.compositor import Compositor
from plusnot.pipeline.display import UIDispatcher, DisplayTarget


class FramePipeline:
    """
    Real-time capture -> segment -> composite -> display pipeline.

    Guarantees:
    - The capture loop never waits for inference or for the display
    - At most one composed frame is in flight to the display; while it
      is, new camera frames are dropped, not buffered
    - Camera or model failures degrade the output, never crash it
    """

    def __init__(
        self,
        dispatcher: UIDispatcher,
        config: Optional[PipelineConfig] = None,
        frame_source: Optional[FrameSource] = None,
        segmenter: Optional[SegmentationEngine] = None,
        compositor: Optional[Compositor] = None,
        waveform_source: Optional[WaveformSource] = None,
    ):
        """
        Initialize pipeline.

        Args:
            dispatcher: Hand-off to the UI thread
            config: Pipeline configuration
            frame_source: Camera (defaults to an OpenCV FrameSource)
            segmenter: Segmentation engine (defaults to ONNX Runtime models)
            compositor: Offscreen compositor
            waveform_source: Optional audio collaborator for the waveform strip
        """
        self.config = config or PipelineConfig()
        self.settings = self.config.settings
        self.dispatcher = dispatcher

        self._camera = frame_source or FrameSource(fps=self.config.video_fps)
        self._segmenter = segmenter or SegmentationEngine(
            self.settings,
            models_dir=self.config.models_dir,
            join_timeout_s=self.config.join_timeout_s,
        )
        self._compositor = compositor or Compositor()
        self._waveform_source = waveform_source

        # Thread state
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._start_time = time.perf_counter()

        # Backpressure: frames dispatched but not yet shown
        self._pending_lock = threading.Lock()
        self._pending_frames = 0

        # Reference captures
        self._background_capture = ReferenceAccumulator(
            self.config.reference_frames, "Background captured!"
        )
        self._human_capture = ReferenceAccumulator(
            self.config.reference_frames, "Human captured!"
        )
        self._reference_background: Optional[NDArray[np.uint8]] = None
        self._human_reference: Optional[NDArray[np.uint8]] = None

        # Mask state (capture thread only)
        self._last_raw_mask: Optional[NDArray[np.uint8]] = None
        self._smoothed_mask: Optional[NDArray[np.uint8]] = None
        self._manual_mask: Optional[NDArray[np.uint8]] = None

        # Toggles
        self.segmentation_enabled = True
        self.hud_enabled = self.config.hud_enabled

        # Stats
        self._frame_size: Tuple[int, int] = (0, 0)
        self._fps = 0.0
        self.frames_rendered = 0
        self.frames_skipped = 0

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def start(
        self,
        display_target: DisplayTarget,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> Optional[str]:
        """
        Open the camera, load a model and start the capture loop.

        Returns:
            None on success, or a human-readable camera error. On error an
            error frame is sent to `display_target` and the pipeline idles.
        """
        width = width or self.config.video_width
        height = height or self.config.video_height

        camera_ok = self._camera.open(self.config.video_device, width, height)

        if not self._load_first_available_model():
            self.segmentation_enabled = False
            logger.warning("No segmentation model could be loaded; segmentation disabled")

        background = self.config.background_image
        if background and Path(background).is_file():
            self._compositor.set_background(background)

        self._start_time = time.perf_counter()
        self._running = True

        if not camera_ok:
            error = self._camera.error or "Camera unavailable"
            self._show_error_frame(display_target, error)
            return error

        self._segmenter.start()

        self._thread = threading.Thread(
            target=self._pipeline_loop,
            args=(display_target,),
            name="FramePipeline",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Pipeline started ({width}x{height})")
        return None

    def stop(self) -> List[str]:
        """
        Stop the capture loop and the segmentation worker.

        Returns:
            Names of threads abandoned after the join timeout
        """
        self._running = False
        abandoned = []

        if not self._segmenter.stop():
            abandoned.append("Segmentation")
        if not join_or_abandon(self._thread, self.config.join_timeout_s):
            abandoned.append("FramePipeline")
        else:
            self._thread = None

        logger.info("Pipeline stopped")
        return abandoned

    def dispose(self):
        """Stop and release the camera, model and surfaces."""
        abandoned = self.stop()
        self._background_capture.cancel()
        self._human_capture.cancel()
        self._segmenter.dispose()

        if "FramePipeline" in abandoned:
            logger.warning("Camera left open for the abandoned capture thread")
        else:
            self._camera.close()

        self._compositor.dispose()

    def _load_first_available_model(self) -> bool:
        """Try model variants in priority order."""
        for variant in self.config.model_priority:
            if self._segmenter.load_model(variant):
                return True
            logger.warning(f"Model {variant.value} unavailable, trying next")
        return False

    def _show_error_frame(self, display_target: DisplayTarget, error: str):
        w, h = self.config.error_frame_size

        def show():
            surface = self._compositor.ensure_surface(w, h)
            self._compositor.compose_error(surface, w, h, error)
            display_target.set_source(surface)

        self.dispatcher.begin_invoke(show)

    # ============================================================
    # CAPTURE LOOP
    # ============================================================

    def _pipeline_loop(self, display_target: DisplayTarget):
        frame_buffer: Optional[NDArray[np.uint8]] = None
        bgra: Optional[NDArray[np.uint8]] = None
        waveform = np.zeros(self.config.waveform_samples, dtype=np.float32)

        source_set = False
        frame_index = 0
        fps_frames = 0
        last_fps_time = 0.0
        interval = max(1, self.config.segmentation_interval_frames)

        while self._running:
            ok, frame = self._camera.read_frame(frame_buffer)
            if not ok:
                time.sleep(self.config.read_retry_sleep_s)
                continue
            frame_buffer = frame

            # Previous frame still on its way to the display: drop this one
            if self._pending_frames > 0:
                self.frames_skipped += 1
                continue

            try:
                h, w = frame.shape[:2]
                self._frame_size = (w, h)

                capturing = self._accumulate_references(frame)

                mask = None
                seg_on = self.segmentation_enabled
                if seg_on and not capturing:
                    if frame_index % interval == 0:
                        self._segmenter.submit_frame(frame, w, h)
                    frame_index += 1
                    mask = self._smooth_mask(self._segmenter.get_latest_mask(), w, h)
                    mask = apply_manual_mask(mask, self._manual_mask, w, h)

                bgra = cv2.cvtColor(frame, cv2.COLOR_BGR2BGRA, bgra)

                if self._waveform_source is not None:
                    self._waveform_source.get_waveform_snapshot(waveform)

                debug = None
                if self.settings.debug_enabled and seg_on:
                    debug = self._segmenter.get_debug_snapshot()

                elapsed = time.perf_counter() - self._start_time
                self._compositor.compose_offscreen(
                    bgra, mask, waveform, w, h,
                    hud_on=self.hud_enabled,
                    elapsed=elapsed,
                    seg_on=seg_on,
                    model_name=self._segmenter.active_model.value,
                    debug=debug,
                )
                self.frames_rendered += 1

                fps_frames += 1
                fps_text = None
                if elapsed - last_fps_time >= 1.0:
                    self._fps = fps_frames / (elapsed - last_fps_time)
                    fps_text = f"FPS: {self._fps:.1f}"
                    fps_frames = 0
                    last_fps_time = elapsed

                with self._pending_lock:
                    self._pending_frames += 1
                self.dispatcher.begin_invoke(
                    partial(self._present, display_target, w, h, not source_set, fps_text)
                )
                source_set = True

            except Exception:
                logger.exception("Frame pipeline iteration failed")
                time.sleep(self.config.read_retry_sleep_s)

        logger.info("Capture loop exited")

    def _present(
        self,
        display_target: DisplayTarget,
        w: int,
        h: int,
        set_source: bool,
        fps_text: Optional[str],
    ):
        """UI thread: blit the offscreen frame, then release backpressure."""
        try:
            surface = self._compositor.ensure_surface(w, h)
            if self._compositor.blit_to_display_surface(surface, w, h):
                if set_source or display_target.source is not surface:
                    display_target.set_source(surface)
                display_target.presented_frames += 1
            if fps_text is not None:
                display_target.fps_text = fps_text
        finally:
            with self._pending_lock:
                self._pending_frames -= 1

    def _accumulate_references(self, frame: NDArray[np.uint8]) -> bool:
        """Feed active reference captures. Returns True while any is active."""
        capturing = False

        if self._background_capture.is_accumulating:
            capturing = True
            reference = self._background_capture.add_frame(frame)
            if reference is not None:
                self._reference_background = reference
                self._segmenter.set_reference_background(reference)

        if self._human_capture.is_accumulating:
            capturing = True
            reference = self._human_capture.add_frame(frame)
            if reference is not None:
                self._human_reference = reference

        return capturing

    def _smooth_mask(
        self,
        raw: Optional[NDArray[np.uint8]],
        w: int,
        h: int,
    ) -> Optional[NDArray[np.uint8]]:
        """
        Blend a newly published mask into the running average.

        Recomputed only when the worker published a new array (identity,
        not value, comparison). Masks of the wrong size are not used.
        """
        if raw is None:
            return None

        if raw is not self._last_raw_mask:
            self._last_raw_mask = raw
            if raw.size != w * h:
                self._smoothed_mask = None
                return None
            self._smoothed_mask = temporal_smooth(
                raw.reshape(h, w), self._smoothed_mask, float(self.settings.stability)
            )

        smoothed = self._smoothed_mask
        if smoothed is None or smoothed.size != w * h:
            return None
        return smoothed

    # ============================================================
    # BACKGROUND / MODEL CONTROL
    # ============================================================

    def set_background_image(self, path: Path | str) -> bool:
        return self._compositor.set_background(path)

    def set_background_from_reference(self) -> bool:
        """Use the captured empty-room reference as the replacement background."""
        reference = self._reference_background
        if reference is None:
            return False
        self._compositor.set_background_image(reference)
        return True

    def set_model(self, variant: SegmentationModel) -> bool:
        had_model = self._segmenter.has_model
        loaded = self._segmenter.load_model(variant)
        if loaded and not had_model:
            self.segmentation_enabled = True
        return loaded

    def open_camera_settings(self):
        self._camera.request_native_settings_dialog()

    # ============================================================
    # REFERENCE CAPTURE
    # ============================================================

    def _on_ui_thread(self, callback: Optional[StatusCallback]) -> Optional[StatusCallback]:
        if callback is None:
            return None

        def post(message: str):
            self.dispatcher.begin_invoke(lambda: callback(message))

        return post

    def capture_background_reference(self, on_status: Optional[Callable[[str], None]] = None):
        """Average the next N frames into the empty-room reference."""
        self._background_capture.start(self._on_ui_thread(on_status))
        logger.info("Background reference capture started")

    def capture_human_reference(self, on_status: Optional[Callable[[str], None]] = None):
        """Average the next N frames into the person-in-frame reference."""
        self._human_capture.start(self._on_ui_thread(on_status))
        logger.info("Human reference capture started")

    def clear_reference_background(self):
        self._segmenter.clear_reference_background()
        self._reference_background = None

    def get_reference_background(self) -> Optional[NDArray[np.uint8]]:
        reference = self._reference_background
        return None if reference is None else reference.copy()

    def get_human_reference(self) -> Optional[NDArray[np.uint8]]:
        reference = self._human_reference
        return None if reference is None else reference.copy()

    def get_silhouette_mask(self) -> Tuple[Optional[NDArray[np.uint8]], int, int]:
        """Grayscale difference between human and background references."""
        human = self._human_reference
        background = self._reference_background
        if human is None or background is None:
            return (None, 0, 0)
        silhouette = silhouette_difference(human, background)
        return (silhouette, silhouette.shape[1], silhouette.shape[0])

    # ============================================================
    # CALIBRATION ANALYSIS
    # ============================================================

    def compute_auto_threshold(self) -> int:
        """
        Otsu threshold of the silhouette difference, falling back to the
        latest mask, then to the current diff threshold.
        """
        silhouette, _, _ = self.get_silhouette_mask()
        if silhouette is not None:
            return self._segmenter.compute_auto_threshold(silhouette)

        mask = self._segmenter.get_latest_mask()
        if mask is not None:
            return self._segmenter.compute_auto_threshold(mask)

        return int(self.settings.diff_threshold)

    def evaluate_silhouette_quality(self) -> Tuple[int, str]:
        """Score the silhouette (or the latest mask) 0-100."""
        silhouette, _, _ = self.get_silhouette_mask()
        if silhouette is not None:
            threshold = otsu_threshold(silhouette)
            binary = np.where(silhouette > threshold, 255, 0).astype(np.uint8)
            return self._segmenter.evaluate_silhouette_quality(binary)

        mask = self._segmenter.get_latest_mask()
        if mask is not None:
            return self._segmenter.evaluate_silhouette_quality(mask)

        return (0, "poor")

    # ============================================================
    # DIAGNOSTICS
    # ============================================================

    def get_debug_masks(self) -> Tuple[
        Optional[NDArray[np.uint8]],
        Optional[NDArray[np.uint8]],
        Optional[NDArray[np.uint8]],
        int,
    ]:
        """(raw, post, diff, size) at model resolution; size 0 if none yet."""
        snapshot = self._segmenter.get_debug_snapshot()
        if snapshot is None:
            return (None, None, None, 0)
        return (
            snapshot.raw_mask,
            snapshot.post_mask,
            snapshot.diff_mask,
            snapshot.raw_size[0],
        )

    def get_latest_composited(self) -> Tuple[Optional[NDArray[np.uint8]], int, int]:
        return self._compositor.get_latest_composited()

    # ============================================================
    # MANUAL MASK
    # ============================================================

    def set_manual_mask(self, override: NDArray[np.uint8]):
        """
        Install a painted override (0 = none, 1 = keep, 2 = remove),
        one code per frame pixel.
        """
        manual = np.array(override, dtype=np.uint8, copy=True).ravel()
        if manual.size and manual.max() > 2:
            raise ValueError("Manual mask codes must be 0 (none), 1 (keep) or 2 (remove)")
        self._manual_mask = manual

    def clear_manual_mask(self):
        self._manual_mask = None

    # ============================================================
    # PROPERTIES
    # ============================================================

    @property
    def active_model(self) -> SegmentationModel:
        return self._segmenter.active_model

    @property
    def camera_available(self) -> bool:
        return self._camera.is_open

    @property
    def has_reference_background(self) -> bool:
        return self._segmenter.has_reference_background

    @property
    def has_human_reference(self) -> bool:
        return self._human_reference is not None

    @property
    def is_capturing_reference(self) -> bool:
        return self._background_capture.is_accumulating or self._human_capture.is_accumulating

    @property
    def frame_width(self) -> int:
        return self._frame_size[0]

    @property
    def frame_height(self) -> int:
        return self._frame_size[1]

    @property
    def pending_frames(self) -> int:
        return self._pending_frames

    @property
    def fps(self) -> float:
        return self._fps

    @property
    def is_running(self) -> bool:
        return self._running
