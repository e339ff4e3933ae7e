"""
Acceptance rules and ranking for propagated candidates.

Template scores below MATCH_FLOOR are never a match, whatever threshold the
caller configured: a (avg + 1) / 2 score of 0.3 already means the patch is
anti-correlated with the template. The floor always dominates.
"""

import logging
from typing import List, Tuple

from .geometry import Rect

logger = logging.getLogger(__name__)

MATCH_FLOOR = 0.3


def effective_threshold(threshold: float) -> float:
    """Caller threshold raised to the absolute floor."""
    return max(MATCH_FLOOR, float(threshold))


def passes_threshold(score: float, threshold: float) -> bool:
    """True if a template score clears both the floor and the threshold."""
    return score >= effective_threshold(threshold)


def meets_min_size(rect: Rect, min_box_size: float) -> bool:
    return rect[2] >= min_box_size and rect[3] >= min_box_size


def rank_results(results: List[Tuple[str, float]], limit: int = None) -> List[Tuple[str, float]]:
    """
    Sort (path, similarity) pairs by similarity (descending), then path.

    Args:
        results: Candidate pairs.
        limit: Keep at most this many (None or <= 0 keeps all).

    Returns:
        Sorted, trimmed list.
    """
    ranked = sorted(results, key=lambda x: (-x[1], x[0]))
    if limit is not None and limit > 0:
        ranked = ranked[:limit]
    return ranked
