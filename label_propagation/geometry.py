"""
Rectangle helpers for pixel-space boxes.

Boxes are plain (x, y, w, h) tuples of floats, top-left origin.
"""

from typing import Tuple

Rect = Tuple[float, float, float, float]

EMPTY_RECT: Rect = (0.0, 0.0, 0.0, 0.0)


def is_empty(rect: Rect) -> bool:
    return rect[2] <= 0 or rect[3] <= 0


def compute_iou(rect_a: Rect, rect_b: Rect) -> float:
    """
    Intersection-over-union of two rectangles.

    Returns:
        Overlap ratio in [0, 1]. 0 when the union area is 0.
    """
    ax, ay, aw, ah = rect_a
    bx, by, bw, bh = rect_b

    x1 = max(ax, bx)
    y1 = max(ay, by)
    x2 = min(ax + aw, bx + bw)
    y2 = min(ay + ah, by + bh)

    inter = max(0.0, x2 - x1) * max(0.0, y2 - y1)
    union = aw * ah + bw * bh - inter
    if union <= 0:
        return 0.0
    return float(inter / union)


def scale_rect(rect: Rect,
               source_size: Tuple[float, float],
               target_size: Tuple[float, float]) -> Rect:
    """
    Map a rect from one image's pixel space to another's.

    Each axis is scaled independently by target/source. A degenerate
    source size leaves the rect unchanged.
    """
    src_w, src_h = source_size
    dst_w, dst_h = target_size
    if src_w <= 0 or src_h <= 0:
        return tuple(float(v) for v in rect)

    sx = dst_w / src_w
    sy = dst_h / src_h
    x, y, w, h = rect
    return (x * sx, y * sy, w * sx, h * sy)


def clamp_rect(rect: Rect, width: float, height: float) -> Rect:
    """Intersect a rect with the image bounds; empty if fully outside."""
    x, y, w, h = rect
    x1 = max(0.0, x)
    y1 = max(0.0, y)
    x2 = min(float(width), x + w)
    y2 = min(float(height), y + h)
    if x2 <= x1 or y2 <= y1:
        return EMPTY_RECT
    return (x1, y1, x2 - x1, y2 - y1)


def tracking_window(rect: Rect, width: float, height: float,
                    factor: float = 2.0) -> Rect:
    """
    Search window for the next frame of a track.

    A box `factor` times the object's size, centred on the object's
    centre and clamped to the frame.
    """
    x, y, w, h = rect
    cx = x + w / 2.0
    cy = y + h / 2.0
    win_w = w * factor
    win_h = h * factor
    return clamp_rect((cx - win_w / 2.0, cy - win_h / 2.0, win_w, win_h),
                      width, height)
