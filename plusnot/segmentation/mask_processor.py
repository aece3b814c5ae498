"""
Mask Processing Utilities.

Handles:
- Post-processing (threshold -> erode -> blur)
- Background-difference fusion
- Temporal smoothing
- Otsu auto-threshold
- Silhouette quality scoring
- Manual override masks
"""

from __future__ import annotations

from typing import Optional, Tuple
import numpy as np
from numpy.typing import NDArray
import cv2

from plusnot.core.contracts import Settings


# Manual mask codes painted by the user
MANUAL_NONE = 0
MANUAL_KEEP = 1
MANUAL_REMOVE = 2


# ============================================================
# POST-PROCESSING
# ============================================================

def apply_threshold(mask: NDArray[np.uint8], threshold: int) -> NDArray[np.uint8]:
    """Binarize at `threshold` (values above become 255). 0 = skip."""
    if threshold <= 0:
        return mask
    _, binary = cv2.threshold(mask, threshold, 255, cv2.THRESH_BINARY)
    return binary


def apply_erode(mask: NDArray[np.uint8], radius: int) -> NDArray[np.uint8]:
    """Shrink the foreground by `radius` pixels to remove edge fringing. 0 = skip."""
    if radius <= 0:
        return mask
    kernel = cv2.getStructuringElement(
        cv2.MORPH_ELLIPSE,
        (radius * 2 + 1, radius * 2 + 1)
    )
    return cv2.erode(mask, kernel)


def apply_blur(mask: NDArray[np.uint8], blur_size: int) -> NDArray[np.uint8]:
    """Gaussian-soften the edge. Kernel is forced odd, sigma = kernel / 3."""
    if blur_size <= 1:
        return mask
    k = blur_size | 1
    return cv2.GaussianBlur(mask, (k, k), k / 3.0)


def post_process(
    mask: NDArray[np.uint8],
    threshold: int,
    erode: int,
    blur_size: int,
) -> NDArray[np.uint8]:
    """
    Clean a raw probability mask.

    Stage order is fixed: threshold -> erode -> blur. Blurring last keeps
    a soft edge; any other order changes the edge profile.

    Returns:
        New mask, never the input array
    """
    out = apply_threshold(mask, threshold)
    out = apply_erode(out, erode)
    out = apply_blur(out, blur_size)
    if out is mask:
        out = mask.copy()
    return out


def post_process_with(mask: NDArray[np.uint8], settings: Settings) -> NDArray[np.uint8]:
    """post_process() driven by the live settings (each field read once)."""
    return post_process(
        mask,
        threshold=int(settings.mask_threshold),
        erode=int(settings.feather_erode),
        blur_size=int(settings.blur_size),
    )


# ============================================================
# BACKGROUND-DIFF FUSION
# ============================================================

def compute_diff_mask(
    frame: NDArray[np.uint8],
    reference: NDArray[np.uint8],
    threshold: int,
    dilate: int,
    mask_size: Tuple[int, int],
) -> NDArray[np.uint8]:
    """
    Binary "something changed here" mask against an empty-room reference.

    Args:
        frame: Current BGR frame
        reference: Averaged BGR reference
        threshold: Grayscale difference binarization level
        dilate: Rectangular dilation kernel side (0 = off)
        mask_size: (width, height) of the ML mask to match

    Returns:
        uint8 mask (0/255 with interpolated edges) at mask_size
    """
    ref_h, ref_w = reference.shape[:2]
    if frame.shape[:2] != (ref_h, ref_w):
        frame = cv2.resize(frame, (ref_w, ref_h))

    diff = cv2.absdiff(frame, reference)
    diff_gray = cv2.cvtColor(diff, cv2.COLOR_BGR2GRAY)
    _, binary = cv2.threshold(diff_gray, threshold, 255, cv2.THRESH_BINARY)

    if dilate > 0:
        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (dilate, dilate))
        binary = cv2.dilate(binary, kernel)

    return cv2.resize(binary, mask_size)


def fuse_with_diff(
    ml_mask: NDArray[np.uint8],
    diff_mask: NDArray[np.uint8],
) -> NDArray[np.uint8]:
    """Foreground only where both the model and the diff agree."""
    return cv2.bitwise_and(ml_mask, diff_mask)


def silhouette_difference(
    human: NDArray[np.uint8],
    background: NDArray[np.uint8],
) -> NDArray[np.uint8]:
    """Grayscale |human - background|, at the human reference size."""
    h, w = human.shape[:2]
    if background.shape[:2] != (h, w):
        background = cv2.resize(background, (w, h))
    diff = cv2.absdiff(human, background)
    return cv2.cvtColor(diff, cv2.COLOR_BGR2GRAY)


# ============================================================
# TEMPORAL SMOOTHING
# ============================================================

def temporal_smooth(
    current_mask: NDArray[np.uint8],
    previous_smoothed: Optional[NDArray[np.uint8]],
    stability: float = 0.3,
) -> NDArray[np.uint8]:
    """
    Exponential moving average of masks.

    smoothed = floor((1 - stability) * current + stability * previous)

    Args:
        current_mask: New raw mask
        previous_smoothed: Last smoothed mask, or None
        stability: Weight of the previous mask (0 = no smoothing)

    Returns:
        New uint8 mask
    """
    if (
        previous_smoothed is None
        or previous_smoothed.shape != current_mask.shape
        or stability <= 0.0
    ):
        return current_mask.copy()

    stability = min(float(stability), 1.0)
    blended = (
        (1.0 - stability) * current_mask.astype(np.float64)
        + stability * previous_smoothed.astype(np.float64)
    )
    return np.floor(blended).astype(np.uint8)


# ============================================================
# AUTO-THRESHOLD
# ============================================================

def otsu_threshold(mask: NDArray[np.uint8]) -> int:
    """
    Otsu's method over the 256-bin intensity histogram.

    The threshold t splits pixels into [0, t] and (t, 255] so that the
    between-class variance is maximal.

    Returns:
        Threshold 0-255; the single intensity for a uniform mask, 0 if empty
    """
    if mask is None or mask.size == 0:
        return 0

    flat = np.ascontiguousarray(mask, dtype=np.uint8).reshape(1, -1)
    lo, hi = int(flat.min()), int(flat.max())
    if lo == hi:
        return lo

    t, _ = cv2.threshold(flat, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    return int(t)


# ============================================================
# SILHOUETTE QUALITY
# ============================================================

def _band_score(value: float, low: float, high: float, floor: float, ceil: float) -> float:
    """1.0 inside [low, high], linear falloff to 0 at floor / ceil."""
    if low <= value <= high:
        return 1.0
    if value < low:
        return max(0.0, (value - floor) / (low - floor)) if low > floor else 0.0
    return max(0.0, (ceil - value) / (ceil - high)) if ceil > high else 0.0


def quality_bucket(score: int) -> str:
    if score >= 80:
        return "excellent"
    if score >= 60:
        return "good"
    if score >= 40:
        return "fair"
    return "poor"


def silhouette_quality(mask: NDArray[np.uint8]) -> Tuple[int, str]:
    """
    Heuristic 0-100 score of how person-like a mask looks.

    Components:
    - coverage: foreground share of the frame (30 pts)
    - coherence: share of foreground in the largest blob (35 pts)
    - envelope fill: blob area over its bounding box (20 pts)
    - upright shape: bounding box taller than wide (15 pts)
    - fragmentation: small speckle blobs subtract up to 15 pts

    Returns:
        (score, "poor" | "fair" | "good" | "excellent")
    """
    if mask is None or mask.size == 0:
        return (0, "poor")

    binary = (mask >= 128).astype(np.uint8)
    fg = int(binary.sum())
    if fg == 0:
        return (0, "poor")

    coverage = fg / binary.size

    num_labels, _, stats, _ = cv2.connectedComponentsWithStats(binary, connectivity=8)
    areas = stats[1:, cv2.CC_STAT_AREA]
    largest = int(np.argmax(areas)) + 1
    largest_area = int(stats[largest, cv2.CC_STAT_AREA])
    box_w = int(stats[largest, cv2.CC_STAT_WIDTH])
    box_h = int(stats[largest, cv2.CC_STAT_HEIGHT])

    coherence = largest_area / fg
    fill = largest_area / float(box_w * box_h)
    aspect = box_h / float(box_w)

    speckles = int(np.count_nonzero(areas < max(1.0, 0.01 * fg)))
    fragmentation = min(1.0, speckles / 20.0)

    score = (
        30.0 * _band_score(coverage, 0.05, 0.6, 0.0, 1.0)
        + 35.0 * coherence
        + 20.0 * _band_score(fill, 0.35, 0.9, 0.0, 1.0)
        + 15.0 * min(1.0, aspect / 1.2)
        - 15.0 * fragmentation
    )
    score_int = int(round(float(np.clip(score, 0.0, 100.0))))
    return (score_int, quality_bucket(score_int))


# ============================================================
# MANUAL OVERRIDE
# ============================================================

def apply_manual_mask(
    mask: Optional[NDArray[np.uint8]],
    manual: Optional[NDArray[np.uint8]],
    width: int,
    height: int,
) -> Optional[NDArray[np.uint8]]:
    """
    Layer a user-painted override on top of the computed mask.

    Manual codes: 0 = leave, 1 = force keep (255), 2 = force remove (0).
    A stale-size override is ignored.

    Returns:
        New mask, or the input untouched when there is nothing to apply
    """
    if mask is None or manual is None:
        return mask
    if manual.size != width * height or mask.size != width * height:
        return mask

    manual = manual.reshape(height, width)
    base = mask.reshape(height, width).copy()
    base[manual == MANUAL_KEEP] = 255
    base[manual == MANUAL_REMOVE] = 0
    return base
