"""
Grayscale intensity histograms and FAISS-based similarity ranking.

The histogram fingerprint is a 16-bin distribution of (R+G+B)/3 intensity
normalized by pixel count. It is cheaper and more forgiving of small shifts
than the difference hash, but blind to spatial layout.

Ranking many candidates against one source uses FAISS: an inner-product
index over L2-normalized histograms (cosine similarity) or a binary index
over 64-bit hashes (Hamming distance).
"""

import os
import numpy as np
import faiss
import logging
from typing import List, Tuple

from .preprocessing import to_intensity
from .hashing import HASH_BITS, hash_to_bytes

logger = logging.getLogger(__name__)

HIST_BINS = int(os.environ.get("PROPAGATION_HIST_BINS", "16"))


def extract_intensity_histogram(image_np: np.ndarray,
                                bins: int = HIST_BINS) -> np.ndarray:
    """
    Extract a grayscale intensity histogram normalized by pixel count.

    Args:
        image_np: RGB uint8 image.
        bins: Number of equal-width intensity bins over [0, 256).

    Returns:
        Float32 vector of length `bins` summing to 1 (all zeros for an
        empty image).
    """
    gray = to_intensity(image_np)
    total = gray.size
    if total == 0:
        return np.zeros(bins, dtype=np.float32)

    indices = (gray.astype(np.int32) * bins) // 256
    hist = np.bincount(indices.ravel(), minlength=bins).astype(np.float32)
    return hist / float(total)


def cosine_similarity(vec_a: np.ndarray, vec_b: np.ndarray) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0 when either vector is missing, zero-norm, or the shapes
    differ. Non-negative histograms always land in [0, 1].
    """
    if vec_a is None or vec_b is None or vec_a.shape != vec_b.shape:
        return 0.0

    a = vec_a.astype(np.float64)
    b = vec_b.astype(np.float64)
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.clip(np.dot(a, b) / (norm_a * norm_b), 0.0, 1.0))


def rank_by_histogram(query: np.ndarray,
                      histograms: List[np.ndarray],
                      k: int) -> List[Tuple[int, float]]:
    """
    Rank histograms by cosine similarity to a query with FAISS.

    Zero-norm vectors score 0, matching cosine_similarity.

    Args:
        query: Query histogram.
        histograms: Candidate histograms, all the same length as query.
        k: Number of results to return.

    Returns:
        List of (position in histograms, similarity), best first.

    Raises:
        ValueError: If a candidate's dimension doesn't match the query.
    """
    if not histograms or k <= 0:
        return []

    dim = query.shape[0]
    for hist in histograms:
        if hist.shape[0] != dim:
            raise ValueError(
                f"Histogram dimension {hist.shape[0]} doesn't match "
                f"query dimension {dim}"
            )

    data = np.vstack(histograms).astype(np.float32)
    faiss.normalize_L2(data)
    q = query.astype(np.float32).reshape(1, -1).copy()
    if np.linalg.norm(q) == 0:
        return [(i, 0.0) for i in range(min(k, len(histograms)))]
    faiss.normalize_L2(q)

    index = faiss.IndexFlatIP(dim)
    index.add(data)
    k = min(k, index.ntotal)
    scores, indices = index.search(q, k)

    return [
        (int(idx), float(np.clip(score, 0.0, 1.0)))
        for score, idx in zip(scores[0], indices[0])
        if idx >= 0
    ]


def rank_by_hash(query_hash: int,
                 hashes: List[int],
                 k: int) -> List[Tuple[int, float]]:
    """
    Rank 64-bit hashes by Hamming similarity to a query with FAISS.

    Returns:
        List of (position in hashes, 1 - distance/64), best first.
    """
    if not hashes or k <= 0:
        return []

    codes = np.vstack([hash_to_bytes(h) for h in hashes])
    index = faiss.IndexBinaryFlat(HASH_BITS)
    index.add(codes)

    k = min(k, index.ntotal)
    distances, indices = index.search(hash_to_bytes(query_hash).reshape(1, -1), k)

    return [
        (int(idx), 1.0 - float(dist) / HASH_BITS)
        for dist, idx in zip(distances[0], indices[0])
        if idx >= 0
    ]
