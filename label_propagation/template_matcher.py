"""
Normalized cross-correlation template matching.

Locates a cropped object (the template) inside a candidate image, optionally
restricted to a search rectangle, and returns a confidence score in [0, 1]
plus the matched box in the candidate's original pixel space.

Process:
    1. Pick a common downscale factor so the candidate's long side is at
       most max_dim, without shrinking the template below min_template.
    2. Split the scaled candidate and template into R, G, B planes.
    3. For every offset on the stride grid inside the valid scan range,
       compute per-channel NCC:
           sum((img - imgMean) * (tpl - tplMean)) / (N * imgStd * tplStd)
       A channel with (near) zero variance in the window or the template
       contributes 0. The channel mean in [-1, 1] maps to (avg + 1) / 2.
    4. Scan rows are split into bands searched in parallel; each band
       reports its local best and the bands are reduced to a global best.
    5. The winning offset is mapped back by the inverse scale.

The NCC numerator comes from cv2.matchTemplate (TM_CCOEFF); window means and
standard deviations come from integral images, so each band costs a few
OpenCV calls regardless of template size.
"""

import os
import math
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .config import MATCH_MAX_DIM, MATCH_MIN_TEMPLATE
from .geometry import Rect, EMPTY_RECT
from .models import MatchResult
from .preprocessing import normalize_image, resize_by_scale

logger = logging.getLogger(__name__)

# Standard deviation below this (in 0-255 intensity units) is flat.
VARIANCE_EPSILON = 1e-3

# Below this many scan rows per band, parallel dispatch costs more than it saves.
MIN_BAND_ROWS = 8

NO_MATCH = MatchResult(0.0, EMPTY_RECT)


def compute_match_scale(candidate_size: Tuple[int, int],
                        template_size: Tuple[int, int],
                        max_dim: int = MATCH_MAX_DIM,
                        min_template: int = MATCH_MIN_TEMPLATE) -> float:
    """
    Common downscale factor for candidate and template.

    The candidate's long side is brought down to max_dim. If that would
    push the template's short side under min_template, the factor is taken
    from the template instead. Never upscales.

    Args:
        candidate_size: (width, height) of the candidate image.
        template_size: (width, height) of the template.

    Returns:
        Scale factor in (0, 1].
    """
    cw, ch = candidate_size
    tw, th = template_size

    longest = max(cw, ch)
    scale = min(1.0, max_dim / float(longest)) if longest > 0 else 1.0

    shortest = min(tw, th)
    if shortest > 0 and shortest * scale < min_template:
        scale = min(1.0, min_template / float(shortest))

    return scale


def _channel_planes(image_np: np.ndarray) -> List[np.ndarray]:
    image_np = normalize_image(image_np)
    return [np.ascontiguousarray(image_np[:, :, c]) for c in range(3)]


def _window_stats(plane: np.ndarray, tw: int, th: int) -> Tuple[np.ndarray, np.ndarray]:
    """Mean and population std of every tw x th window of a plane."""
    s, sq = cv2.integral2(plane, sdepth=cv2.CV_64F, sqdepth=cv2.CV_64F)
    n = float(tw * th)

    win_sum = s[th:, tw:] - s[:-th, tw:] - s[th:, :-tw] + s[:-th, :-tw]
    win_sq = sq[th:, tw:] - sq[:-th, tw:] - sq[th:, :-tw] + sq[:-th, :-tw]

    mean = win_sum / n
    var = np.maximum(win_sq / n - mean * mean, 0.0)
    return mean, np.sqrt(var)


def _search_band(image_planes: List[np.ndarray],
                 template_planes: List[np.ndarray],
                 template_stds: List[float],
                 x0: int, x1: int, y0: int, y1: int,
                 stride: int) -> Tuple[float, int, int]:
    """
    Best offset among rows y0..y1 and columns x0..x1 (inclusive, stride grid).

    Returns:
        (score, x, y) of the band's best cell, score in [0, 1].
    """
    th, tw = template_planes[0].shape
    n = float(tw * th)
    total = None

    for plane, tpl, tpl_std in zip(image_planes, template_planes, template_stds):
        region = plane[y0:y1 + th, x0:x1 + tw]
        grid = (slice(None, None, stride), slice(None, None, stride))

        if tpl_std <= VARIANCE_EPSILON:
            ncc = np.zeros_like(region[:y1 - y0 + 1, :x1 - x0 + 1][grid], dtype=np.float64)
        else:
            numerator = cv2.matchTemplate(region, tpl, cv2.TM_CCOEFF)[grid].astype(np.float64)
            _, img_std = _window_stats(region, tw, th)
            img_std = img_std[grid]

            flat = img_std <= VARIANCE_EPSILON
            denom = np.where(flat, 1.0, n * img_std * tpl_std)
            ncc = np.where(flat, 0.0, numerator / denom)
            ncc = np.clip(ncc, -1.0, 1.0)

        total = ncc if total is None else total + ncc

    scores = (total / len(image_planes) + 1.0) / 2.0
    best = int(np.argmax(scores))
    row, col = np.unravel_index(best, scores.shape)
    return float(scores[row, col]), x0 + int(col) * stride, y0 + int(row) * stride


def _scan_range(extent: int, tpl_extent: int,
                window: Optional[Tuple[float, float]]) -> Tuple[int, int]:
    """Inclusive offset range along one axis, optionally inside a window."""
    lo, hi = 0, extent - tpl_extent
    if window is not None:
        start, length = window
        lo = max(lo, int(round(start)))
        hi = min(hi, int(round(start + length)) - tpl_extent)
    return lo, hi


def match_template(candidate: np.ndarray,
                   template: np.ndarray,
                   search_rect: Optional[Rect] = None,
                   stride: int = 1,
                   max_dim: int = MATCH_MAX_DIM,
                   min_template: int = MATCH_MIN_TEMPLATE,
                   max_workers: Optional[int] = None) -> MatchResult:
    """
    Find the best match of a template inside a candidate image.

    Args:
        candidate: RGB uint8 candidate image.
        template: RGB uint8 template crop.
        search_rect: Optional (x, y, w, h) in the candidate's original
            pixels. The matched box must lie fully inside it.
        stride: Scan step, in scaled pixels, along both axes.
        max_dim: Long-side limit of the scaled candidate.
        min_template: Short-side floor of the scaled template.
        max_workers: Thread pool size for the band search.

    Returns:
        MatchResult(score, rect). Score 0 and an empty rect when the
        template doesn't fit the search range or nothing was evaluated.
        Callers must still apply the absolute match floor.
    """
    if candidate is None or template is None or candidate.size == 0 or template.size == 0:
        return NO_MATCH

    stride = max(1, int(stride))
    ch, cw = candidate.shape[:2]
    th0, tw0 = template.shape[:2]

    scale = compute_match_scale((cw, ch), (tw0, th0), max_dim, min_template)
    image_planes = _channel_planes(resize_by_scale(candidate, scale))
    template_planes = _channel_planes(resize_by_scale(template, scale))

    img_h, img_w = image_planes[0].shape
    tpl_h, tpl_w = template_planes[0].shape

    x_window = y_window = None
    if search_rect is not None:
        sx, sy, sw, sh = search_rect
        x_window = (sx * scale, sw * scale)
        y_window = (sy * scale, sh * scale)

    x0, x1 = _scan_range(img_w, tpl_w, x_window)
    y0, y1 = _scan_range(img_h, tpl_h, y_window)
    if x1 < x0 or y1 < y0:
        logger.debug(
            f"Empty scan range: template {tpl_w}x{tpl_h} in "
            f"{img_w}x{img_h} (search {search_rect})"
        )
        return NO_MATCH

    template_stds = [float(np.std(p, dtype=np.float64)) for p in template_planes]
    if all(s <= VARIANCE_EPSILON for s in template_stds):
        logger.debug("Flat template, nothing to correlate")
        return NO_MATCH

    rows = list(range(y0, y1 + 1, stride))
    workers = max_workers or os.cpu_count() or 1
    band_count = max(1, min(workers, len(rows) // MIN_BAND_ROWS))
    band_size = int(math.ceil(len(rows) / float(band_count)))
    bands = [rows[i:i + band_size] for i in range(0, len(rows), band_size)]

    def search(band):
        return _search_band(image_planes, template_planes, template_stds,
                            x0, x1, band[0], band[-1], stride)

    if len(bands) == 1:
        band_results = [search(bands[0])]
    else:
        with ThreadPoolExecutor(max_workers=len(bands)) as executor:
            band_results = list(executor.map(search, bands))

    # Bands are in row order; strict > keeps the earliest cell on ties
    best_score, best_x, best_y = -1.0, 0, 0
    for score, x, y in band_results:
        if score > best_score:
            best_score, best_x, best_y = score, x, y

    if best_score < 0:
        return NO_MATCH

    inv = 1.0 / scale
    rect = (best_x * inv, best_y * inv, tpl_w * inv, tpl_h * inv)
    return MatchResult(float(best_score), rect)
