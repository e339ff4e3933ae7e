"""
Image loading and preprocessing for propagation.

Handles decoding, dtype normalization, grayscale intensity and region
cropping so every signal (hash, histogram, template match) sees the same
RGB uint8 input regardless of how the image was stored.
"""

import os
import cv2
import numpy as np
import logging
from typing import Optional, Tuple

from .geometry import Rect

logger = logging.getLogger(__name__)


class ImageReadError(IOError):
    """Raised when an image cannot be decoded."""


def load_image(path: str) -> np.ndarray:
    """
    Decode an image file into an RGB uint8 array.

    Args:
        path: Image file path.

    Returns:
        Array of shape (H, W, 3).

    Raises:
        ImageReadError: If the file is missing, unreadable or cannot be decoded.
    """
    if not os.path.exists(path):
        raise ImageReadError(f"Image not found: {path}")

    # cv2.imread can't handle non-ASCII paths on Windows; decode from bytes
    try:
        data = np.fromfile(path, dtype=np.uint8)
    except OSError as e:
        raise ImageReadError(f"Could not read image: {path} ({e})") from e
    image = cv2.imdecode(data, cv2.IMREAD_COLOR) if data.size else None
    if image is None:
        raise ImageReadError(f"Could not decode image: {path}")

    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def read_dimensions(path: str) -> Tuple[int, int]:
    """Return (width, height) of an image file."""
    image = load_image(path)
    h, w = image.shape[:2]
    return w, h


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8 RGB format."""
    if image_np.dtype != np.uint8:
        if image_np.size and image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)

    if image_np.ndim == 2:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    elif image_np.shape[2] == 4:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_RGBA2RGB)
    return image_np


def to_intensity(image_np: np.ndarray) -> np.ndarray:
    """
    Grayscale intensity as the plain channel mean (R+G+B)/3.

    The unweighted mean is used instead of luma so the fingerprint of a
    file is the same regardless of the decoder's colour conversion.
    """
    image_np = normalize_image(image_np)
    total = image_np.astype(np.uint16).sum(axis=2)
    return (total // 3).astype(np.uint8)


def crop_region(image_np: np.ndarray, rect: Rect) -> Optional[np.ndarray]:
    """
    Crop a pixel-space rect out of an image with boundary clamping.

    Args:
        image_np: Image array (H, W[, C]).
        rect: (x, y, w, h) in pixels; fractional values are truncated.

    Returns:
        The cropped patch (a copy), or None if the clamped region is empty.
    """
    h, w = image_np.shape[:2]
    x, y, rw, rh = rect

    x1 = int(max(0, x))
    y1 = int(max(0, y))
    x2 = min(w, x1 + int(rw))
    y2 = min(h, y1 + int(rh))

    if x2 <= x1 or y2 <= y1:
        return None

    return image_np[y1:y2, x1:x2].copy()


def resize_by_scale(image_np: np.ndarray, scale: float) -> np.ndarray:
    """Resize by a uniform factor, never below 1x1."""
    if scale == 1.0:
        return image_np
    h, w = image_np.shape[:2]
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
    return cv2.resize(image_np, (new_w, new_h), interpolation=interpolation)
