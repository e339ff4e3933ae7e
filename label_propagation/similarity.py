"""
Whole-image similarity index.

Caches a difference hash and an intensity histogram per image and scores
pairs of images in [0, 1]:

    hash mode       1 - hamming(hashA, hashB) / 64
    histogram mode  cosine(histA, histB)

Caches are keyed by the case-folded path and safe for concurrent
get-or-compute from worker threads. Two workers may hash the same image at
the same time on first access; both compute the same value, and the first
one stored wins. The hash cache is persisted per project under each image's
path as first seen; histograms live in memory only.
"""

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np

from .cache import DebouncedCacheWriter, cache_path_for, load_hash_cache
from .config import SimilarityMode, CACHE_SAVE_INTERVAL
from .hashing import compute_dhash, hash_similarity
from .histograms import (
    extract_intensity_histogram, cosine_similarity,
    rank_by_hash, rank_by_histogram,
)
from .preprocessing import load_image

logger = logging.getLogger(__name__)


def cache_key(path: str) -> str:
    return path.casefold()


class SimilarityIndex:
    """
    Per-image fingerprint cache with pairwise and ranked similarity.

    Args:
        loader: Callable decoding a path into an RGB uint8 array.
        save_interval: Minimum seconds between hash cache writes.
    """

    def __init__(self,
                 loader: Callable[[str], np.ndarray] = None,
                 save_interval: float = CACHE_SAVE_INTERVAL):
        self.loader = loader or load_image
        self.save_interval = save_interval
        self._hashes: Dict[str, int] = {}
        # cache key -> path as first seen, used as the persisted key
        self._paths: Dict[str, str] = {}
        self._histograms: Dict[str, np.ndarray] = {}
        self._lock = threading.Lock()
        self._writer: Optional[DebouncedCacheWriter] = None

    # ------------------------------------------------------------------
    # Project cache
    # ------------------------------------------------------------------

    def set_project_folder(self, project_folder: Optional[str]) -> None:
        """
        Bind the index to a project and load its persisted hashes.

        Passing None (or an empty string) clears both caches and turns
        persistence off.
        """
        with self._lock:
            self._hashes.clear()
            self._paths.clear()
            self._histograms.clear()

        if not project_folder or not str(project_folder).strip():
            self._writer = None
            return

        path = cache_path_for(project_folder)
        loaded = load_hash_cache(path)
        with self._lock:
            for path_key, value in loaded.items():
                key = cache_key(path_key)
                self._hashes[key] = value
                self._paths.setdefault(key, path_key)
        self._writer = DebouncedCacheWriter(path, self.save_interval)

    def flush(self) -> bool:
        """Write the hash cache now. Returns True if written."""
        if self._writer is None:
            return False
        return self._writer.flush(self._snapshot)

    def _snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {self._paths.get(key, key): value
                    for key, value in self._hashes.items()}

    # ------------------------------------------------------------------
    # Fingerprints
    # ------------------------------------------------------------------

    def hash(self, path: str) -> int:
        """
        Difference hash of an image, computed once and cached.

        Raises:
            ImageReadError: If the image can't be decoded.
        """
        key = cache_key(path)
        cached = self._hashes.get(key)
        if cached is not None:
            return cached

        value = compute_dhash(self.loader(path))
        with self._lock:
            value = self._hashes.setdefault(key, value)
            self._paths.setdefault(key, path)

        if self._writer is not None:
            self._writer.save(self._snapshot)
        return value

    def histogram(self, path: str) -> np.ndarray:
        """
        Intensity histogram of an image, cached in memory.

        Raises:
            ImageReadError: If the image can't be decoded.
        """
        key = cache_key(path)
        cached = self._histograms.get(key)
        if cached is not None:
            return cached

        value = extract_intensity_histogram(self.loader(path))
        with self._lock:
            return self._histograms.setdefault(key, value)

    def fingerprint(self, path: str, mode: SimilarityMode):
        """Hash or histogram of an image depending on mode."""
        if SimilarityMode.parse(mode) == SimilarityMode.HISTOGRAM:
            return self.histogram(path)
        return self.hash(path)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def similarity(self, path_a: str, path_b: str,
                   mode: SimilarityMode = SimilarityMode.HASH) -> float:
        """
        Similarity of two images in [0, 1]; 1 means identical fingerprints.

        Raises:
            ImageReadError: If either image can't be decoded.
        """
        if SimilarityMode.parse(mode) == SimilarityMode.HISTOGRAM:
            return cosine_similarity(self.histogram(path_a), self.histogram(path_b))
        return hash_similarity(self.hash(path_a), self.hash(path_b))

    def rank(self, source: str, candidates: Iterable[str],
             mode: SimilarityMode = SimilarityMode.HASH,
             k: Optional[int] = None) -> List[Tuple[str, float]]:
        """
        Rank candidates by similarity to a source image.

        Candidates whose fingerprint can't be computed are left out.
        Every fingerprint should already be warm when this runs inside a
        propagation job, so this does no decoding in the common case.

        Args:
            source: Source image path.
            candidates: Candidate image paths.
            mode: Similarity signal.
            k: Number of results (None = all).

        Returns:
            List of (candidate path, similarity), best first.

        Raises:
            ImageReadError: If the source image can't be decoded.
        """
        mode = SimilarityMode.parse(mode)
        query = self.fingerprint(source, mode)

        paths, prints = [], []
        for path in candidates:
            try:
                prints.append(self.fingerprint(path, mode))
                paths.append(path)
            except OSError as e:
                logger.warning(f"Skipping candidate during ranking: {e}")

        k = len(paths) if k is None else min(k, len(paths))
        if mode == SimilarityMode.HISTOGRAM:
            ranked = rank_by_histogram(query, prints, k)
        else:
            ranked = rank_by_hash(query, prints, k)

        return [(paths[i], score) for i, score in ranked]
