"""
Frame Compositor.

Renders each output frame into a reusable offscreen BGRA surface:
- replacement background (resized once per resolution, cached)
- camera pixels over it, with the mask as per-pixel opacity
- HUD, waveform and debug overlays

The finished surface is copied to the display surface on the UI thread.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional, Tuple
import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger

from plusnot.core.contracts import DebugSnapshot
from plusnot.rendering.overlays import (
    HudRenderer,
    WaveformRenderer,
    draw_debug_thumbnails,
    FONT,
)


ERROR_BACKGROUND = (26, 10, 10, 255)
ERROR_TITLE = (60, 60, 255, 255)
ERROR_TEXT = (204, 255, 0, 255)
ERROR_HINT = (102, 128, 0, 255)


class Compositor:
    """
    Offscreen compositor.

    Pixel layout everywhere is interleaved BGRA, row stride = width * 4.

    Guarantees:
    - The offscreen surface is reallocated only on resolution change
    - A mask whose length is not width * height is never indexed
    - Blitting into a surface of a different size is a no-op
    """

    def __init__(self):
        self._lock = threading.Lock()

        # Offscreen surface
        self._offscreen: Optional[NDArray[np.uint8]] = None
        self._offscreen_size: Tuple[int, int] = (0, 0)

        # Display surface handed to the UI
        self._display_surface: Optional[NDArray[np.uint8]] = None

        # Replacement background
        self._background: Optional[NDArray[np.uint8]] = None
        self._bg_cache: Optional[NDArray[np.uint8]] = None
        self._bg_cache_size: Tuple[int, int] = (0, 0)

        self.hud = HudRenderer()
        self.waveform = WaveformRenderer()

    # ============================================================
    # BACKGROUND IMAGE
    # ============================================================

    def set_background(self, image_path: Path | str) -> bool:
        """
        Load a replacement background from an image file.

        Returns:
            True if the image was decoded
        """
        image = cv2.imread(str(image_path), cv2.IMREAD_COLOR)
        if image is None:
            logger.warning(f"Could not read background image: {image_path}")
            return False
        self.set_background_image(image)
        logger.info(f"Background image loaded: {image_path} ({image.shape[1]}x{image.shape[0]})")
        return True

    def set_background_image(self, image: NDArray[np.uint8]):
        """Use a BGR array (copied) as the replacement background."""
        background = np.array(image[:, :, :3], dtype=np.uint8, copy=True)
        with self._lock:
            self._background = background
            self._bg_cache = None
            self._bg_cache_size = (0, 0)

    def clear_background(self):
        with self._lock:
            self._background = None
            self._bg_cache = None
            self._bg_cache_size = (0, 0)

    @property
    def has_background(self) -> bool:
        return self._background is not None

    def _resized_background(self, w: int, h: int) -> Optional[NDArray[np.uint8]]:
        if self._background is None:
            return None
        if self._bg_cache is not None and self._bg_cache_size == (w, h):
            return self._bg_cache

        self._bg_cache = cv2.resize(self._background, (w, h), interpolation=cv2.INTER_AREA)
        self._bg_cache_size = (w, h)
        return self._bg_cache

    # ============================================================
    # SURFACES
    # ============================================================

    def ensure_surface(self, w: int, h: int) -> NDArray[np.uint8]:
        """Display surface of the given size, reused while the size holds."""
        surface = self._display_surface
        if surface is None or surface.shape != (h, w, 4):
            surface = np.zeros((h, w, 4), dtype=np.uint8)
            self._display_surface = surface
        return surface

    def _ensure_offscreen(self, w: int, h: int):
        if self._offscreen is not None and self._offscreen_size == (w, h):
            return
        self._offscreen = np.zeros((h, w, 4), dtype=np.uint8)
        self._offscreen_size = (w, h)
        logger.debug(f"Offscreen surface allocated: {w}x{h}")

    # ============================================================
    # COMPOSITING
    # ============================================================

    def compose_offscreen(
        self,
        frame_pixels: NDArray[np.uint8],
        mask: Optional[NDArray[np.uint8]],
        waveform: Optional[NDArray[np.float32]],
        w: int,
        h: int,
        hud_on: bool,
        elapsed: float,
        seg_on: bool = True,
        model_name: str = "",
        debug: Optional[DebugSnapshot] = None,
    ):
        """
        Render one frame offscreen. Called on the pipeline thread.

        With a background and a valid mask, the mask overwrites the frame
        buffer's alpha channel and the frame is blended non-premultiplied:
        out = frame * a + background * (1 - a). Otherwise the frame is
        drawn opaque.

        Args:
            frame_pixels: BGRA camera pixels (h, w, 4); alpha is overwritten
            mask: Foreground opacity, length w * h, or None
            waveform: Audio samples in [-1, 1] for the waveform strip
        """
        if frame_pixels.shape != (h, w, 4):
            raise ValueError(
                f"Frame buffer shape {frame_pixels.shape} does not match {w}x{h} BGRA"
            )

        with self._lock:
            self._ensure_offscreen(w, h)
            canvas = self._offscreen

            mask_ok = mask is not None and mask.size == w * h
            if mask is not None and not mask_ok:
                logger.debug(f"Ignoring stale mask ({mask.size} px for {w}x{h})")

            background = self._resized_background(w, h) if mask_ok else None

            if background is not None:
                frame_pixels[:, :, 3] = mask.reshape(h, w)
                alpha = frame_pixels[:, :, 3:4].astype(np.float32) * (1.0 / 255.0)
                blended = (
                    frame_pixels[:, :, :3].astype(np.float32) * alpha
                    + background.astype(np.float32) * (1.0 - alpha)
                )
                canvas[:, :, :3] = (blended + 0.5).astype(np.uint8)
            else:
                canvas[:, :, :3] = frame_pixels[:, :, :3]

            if hud_on:
                self.hud.draw(canvas, w, h, elapsed, seg_on, model_name)

            self.waveform.draw(canvas, waveform, w, h)

            if debug is not None:
                draw_debug_thumbnails(canvas, debug, w, h)

            # Antialiased overlay strokes blend alpha too
            canvas[:, :, 3] = 255

    def blit_to_display_surface(self, target: NDArray[np.uint8], w: int, h: int) -> bool:
        """
        Copy the finished offscreen frame to the display surface.
        Called on the UI thread.

        Returns:
            False (and leaves `target` untouched) on any size mismatch
        """
        with self._lock:
            if self._offscreen is None or self._offscreen_size != (w, h):
                return False
            if target.shape != self._offscreen.shape:
                return False
            np.copyto(target, self._offscreen)
            return True

    def get_latest_composited(self) -> Tuple[Optional[NDArray[np.uint8]], int, int]:
        """Copy of the last composed frame as (pixels, w, h)."""
        with self._lock:
            if self._offscreen is None:
                return (None, 0, 0)
            w, h = self._offscreen_size
            return (self._offscreen.copy(), w, h)

    def compose_error(self, surface: NDArray[np.uint8], w: int, h: int, message: str):
        """Render the "camera unavailable" screen straight into `surface`."""
        if surface.shape != (h, w, 4):
            return

        surface[:] = ERROR_BACKGROUND
        cx, cy = w // 2, h // 2

        def centered(text: str, y: int, scale: float, color, thickness: int):
            (tw, _), _ = cv2.getTextSize(text, FONT, scale, thickness)
            cv2.putText(surface, text, (cx - tw // 2, y), FONT, scale, color, thickness, cv2.LINE_AA)

        centered("CAMERA UNAVAILABLE", cy - 60, 1.6, ERROR_TITLE, 3)

        y = cy
        for line in message.split("\n"):
            centered(line, y, 0.6, ERROR_TEXT, 1)
            y += 28

        centered(
            "Close other apps using the camera, then restart plusnot",
            cy + 100, 0.45, ERROR_HINT, 1,
        )

    def dispose(self):
        with self._lock:
            self._offscreen = None
            self._offscreen_size = (0, 0)
            self._display_surface = None
            self._background = None
            self._bg_cache = None
