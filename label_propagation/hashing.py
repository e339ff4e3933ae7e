"""
Difference hash (dHash) perceptual fingerprint.

The image is reduced to a 9x8 grayscale grid and each of the 64 adjacent
horizontal pixel pairs contributes one bit: set when the left pixel is
brighter than the right one. Near-duplicate frames differ in only a few
bits, so Hamming distance is a cheap whole-image similarity measure.
"""

import cv2
import numpy as np
import logging

from .preprocessing import to_intensity

logger = logging.getLogger(__name__)

HASH_BITS = 64
_GRID_W = 9
_GRID_H = 8


def compute_dhash(image_np: np.ndarray) -> int:
    """
    Compute the 64-bit difference hash of an RGB image.

    Bit index y*8 + x is set when grid[y, x] > grid[y, x + 1].

    Args:
        image_np: RGB uint8 image.

    Returns:
        Unsigned 64-bit hash as a Python int.
    """
    gray = to_intensity(image_np)
    grid = cv2.resize(gray, (_GRID_W, _GRID_H), interpolation=cv2.INTER_AREA)
    diff = grid[:, :-1] > grid[:, 1:]

    image_hash = 0
    for bit_index in np.flatnonzero(diff):
        image_hash |= 1 << int(bit_index)
    return image_hash


def hamming_distance(hash_a: int, hash_b: int) -> int:
    """Number of differing bits between two hashes."""
    return bin((hash_a ^ hash_b) & 0xFFFFFFFFFFFFFFFF).count("1")


def hash_similarity(hash_a: int, hash_b: int) -> float:
    """Map Hamming distance to [0, 1]; 1 means identical hashes."""
    return 1.0 - hamming_distance(hash_a, hash_b) / float(HASH_BITS)


def hash_to_bytes(image_hash: int) -> np.ndarray:
    """Pack a hash into 8 little-endian bytes (FAISS binary code layout)."""
    return np.array([image_hash], dtype="<u8").view(np.uint8)
