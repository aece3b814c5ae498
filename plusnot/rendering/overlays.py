"""
Decorative and diagnostic overlays drawn onto the BGRA offscreen surface.
"""

from __future__ import annotations

from typing import Optional, List, Tuple
import numpy as np
from numpy.typing import NDArray
import cv2

from plusnot.core.contracts import DebugSnapshot


# BGRA colors
ACCENT = (204, 255, 0, 255)        # #00FFCC
ACCENT_DIM = (68, 68, 0, 255)      # #004444
LABEL = (255, 255, 255, 255)
FONT = cv2.FONT_HERSHEY_SIMPLEX


class HudRenderer:
    """Corner brackets, session timer and segmentation status."""

    def __init__(self, bracket_len: int = 40, margin: int = 20):
        self.bracket_len = bracket_len
        self.margin = margin

    def draw(
        self,
        canvas: NDArray[np.uint8],
        w: int,
        h: int,
        elapsed: float,
        seg_on: bool,
        model_name: str = "",
    ):
        m, L = self.margin, self.bracket_len
        corners = [
            ((m, m), (1, 1)),
            ((w - m, m), (-1, 1)),
            ((m, h - m), (1, -1)),
            ((w - m, h - m), (-1, -1)),
        ]
        for (x, y), (dx, dy) in corners:
            cv2.line(canvas, (x, y), (x + dx * L, y), ACCENT, 3, cv2.LINE_AA)
            cv2.line(canvas, (x, y), (x, y + dy * L), ACCENT, 3, cv2.LINE_AA)

        minutes, seconds = divmod(max(0.0, elapsed), 60.0)
        timer = f"{int(minutes):02d}:{seconds:05.2f}"
        (tw, _), _ = cv2.getTextSize(timer, FONT, 0.9, 2)
        cv2.putText(canvas, timer, ((w - tw) // 2, m + 30), FONT, 0.9, ACCENT, 2, cv2.LINE_AA)

        status = f"SEG {'ON' if seg_on else 'OFF'}"
        if model_name:
            status += f" | {model_name}"
        cv2.putText(canvas, status, (m + 10, m + 60), FONT, 0.5, ACCENT, 1, cv2.LINE_AA)


class WaveformRenderer:
    """Audio waveform strip along the bottom edge."""

    def __init__(self, margin_x: int = 40, baseline_offset: int = 50, half_height: int = 35):
        self.margin_x = margin_x
        self.baseline_offset = baseline_offset
        self.half_height = half_height

    def draw(self, canvas: NDArray[np.uint8], samples: Optional[NDArray[np.float32]], w: int, h: int):
        if samples is None or len(samples) == 0:
            return

        mx = self.margin_x
        cy = h - self.baseline_offset
        width = w - 2 * mx
        if width <= 0 or cy <= 0:
            return

        cv2.line(canvas, (mx, cy), (w - mx, cy), ACCENT_DIM, 1, cv2.LINE_AA)

        n = len(samples)
        xs = mx + np.arange(n, dtype=np.float32) / n * width
        ys = cy - np.clip(samples, -1.0, 1.0) * self.half_height
        points = np.stack([xs, ys], axis=1).round().astype(np.int32)
        cv2.polylines(canvas, [points], False, ACCENT, 2, cv2.LINE_AA)


def draw_debug_thumbnails(
    canvas: NDArray[np.uint8],
    snapshot: DebugSnapshot,
    w: int,
    h: int,
    margin: int = 10,
):
    """
    Draw the intermediate masks as labelled grayscale thumbnails down
    the right edge. Thumbnails that would not fit are skipped.
    """
    stages: List[Tuple[str, Optional[NDArray[np.uint8]]]] = [
        ("raw", snapshot.raw_mask),
        ("post", snapshot.post_mask),
        ("diff", snapshot.diff_mask),
        ("final", snapshot.final_mask),
    ]

    size = min(160, w // 5, (h - margin) // 4 - 20)
    if size < 16:
        return

    x = w - size - margin
    y = margin
    for label, mask in stages:
        if mask is None or mask.ndim != 2 or mask.size == 0:
            continue
        if y + size + 16 > h:
            break

        thumb = cv2.resize(mask, (size, size), interpolation=cv2.INTER_AREA)
        canvas[y + 16:y + 16 + size, x:x + size] = cv2.cvtColor(thumb, cv2.COLOR_GRAY2BGRA)
        cv2.rectangle(canvas, (x, y + 16), (x + size - 1, y + 16 + size - 1), ACCENT, 1)
        cv2.putText(canvas, label.upper(), (x, y + 12), FONT, 0.4, LABEL, 1, cv2.LINE_AA)
        y += size + 20
