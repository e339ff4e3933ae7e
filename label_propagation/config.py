"""
Propagation configuration.

Thresholds and run options are read from environment variables at import
time to allow tuning without code changes, then carried around explicitly in
a PropagationConfig value. The orchestrator never reads global settings; a
run is fully described by the config it was built with plus its per-call
overrides.
"""

import os
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class SimilarityMode(str, Enum):
    """Whole-image similarity signal."""

    HASH = "hash"
    HISTOGRAM = "histogram"

    @classmethod
    def parse(cls, value) -> "SimilarityMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown similarity mode '{value}' "
                f"(expected one of: {', '.join(m.value for m in cls)})"
            )


# Merge threshold shared by suggestion dedup and auto-accept.
MERGE_IOU = float(os.environ.get("PROPAGATION_MERGE_IOU", "0.5"))
try:
    SIMILARITY_MODE = SimilarityMode.parse(
        os.environ.get("PROPAGATION_SIMILARITY_MODE", "hash"))
except ValueError as e:
    logger.warning(f"{e}; falling back to hash mode")
    SIMILARITY_MODE = SimilarityMode.HASH

# Per-algorithm thresholds
IMAGE_THRESHOLD = float(os.environ.get("PROPAGATION_IMAGE_THRESHOLD", "0.9"))
OBJECT_THRESHOLD = float(os.environ.get("PROPAGATION_OBJECT_THRESHOLD", "0.7"))
TRACKING_THRESHOLD = float(os.environ.get("PROPAGATION_TRACKING_THRESHOLD", "0.6"))
RANKING_THRESHOLD = float(os.environ.get("PROPAGATION_RANKING_THRESHOLD", "0.75"))

# Search parameters
CANDIDATE_LIMIT = int(os.environ.get("PROPAGATION_CANDIDATE_LIMIT", "20"))
SEARCH_STRIDE = int(os.environ.get("PROPAGATION_SEARCH_STRIDE", "2"))
MIN_BOX_SIZE = int(os.environ.get("PROPAGATION_MIN_BOX_SIZE", "8"))
FRAME_WINDOW = int(os.environ.get("PROPAGATION_FRAME_WINDOW", "5"))
MAX_SUGGESTIONS_PER_IMAGE = int(os.environ.get("PROPAGATION_MAX_PER_IMAGE", "0"))

# Matcher working resolution
MATCH_MAX_DIM = int(os.environ.get("PROPAGATION_MATCH_MAX_DIM", "640"))
MATCH_MIN_TEMPLATE = int(os.environ.get("PROPAGATION_MATCH_MIN_TEMPLATE", "32"))

PROGRESS_INTERVAL = int(os.environ.get("PROPAGATION_PROGRESS_INTERVAL", "250"))
CACHE_SAVE_INTERVAL = float(os.environ.get("PROPAGATION_CACHE_SAVE_INTERVAL", "5.0"))


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class PropagationConfig:
    """
    Settings for one orchestrator.

    Attributes:
        merge_iou: IoU at or above which two boxes are the same object.
        similarity_mode: Whole-image similarity signal (hash or histogram).
        image_threshold: Minimum image similarity for image propagation.
        object_threshold: Minimum template score for object propagation.
        tracking_threshold: Minimum template score for tracking.
        ranking_threshold: Minimum image similarity for a candidate to be
            ranked during object propagation.
        restrict_to_similar: Rank object-propagation candidates by image
            similarity. When False every eligible candidate is considered.
        candidate_limit: Top-K candidates kept per source image.
        search_stride: Scan step of the template search, in scaled pixels.
        min_box_size: Smallest template / matched box side, in pixels.
        frame_window: Frames visited on each side of a tracking anchor.
        max_suggestions_per_image: Per-run cap per image (0 = unlimited).
        auto_accept: Merge results directly into committed labels.
        skip_labeled: Skip candidates that already carry labels.
        max_workers: Thread pool size (None = executor default).
        progress_interval: Report progress every N ticks.
        cache_save_interval: Minimum seconds between hash cache writes.
        default_class_id: Class used when a class id is unknown.
    """

    merge_iou: float = MERGE_IOU
    similarity_mode: SimilarityMode = SIMILARITY_MODE
    image_threshold: float = IMAGE_THRESHOLD
    object_threshold: float = OBJECT_THRESHOLD
    tracking_threshold: float = TRACKING_THRESHOLD
    ranking_threshold: float = RANKING_THRESHOLD
    restrict_to_similar: bool = _env_flag("PROPAGATION_RESTRICT_TO_SIMILAR", "true")
    candidate_limit: int = CANDIDATE_LIMIT
    search_stride: int = SEARCH_STRIDE
    min_box_size: int = MIN_BOX_SIZE
    frame_window: int = FRAME_WINDOW
    max_suggestions_per_image: int = MAX_SUGGESTIONS_PER_IMAGE
    auto_accept: bool = _env_flag("PROPAGATION_AUTO_ACCEPT", "false")
    skip_labeled: bool = _env_flag("PROPAGATION_SKIP_LABELED", "true")
    match_max_dim: int = MATCH_MAX_DIM
    match_min_template: int = MATCH_MIN_TEMPLATE
    max_workers: Optional[int] = None
    progress_interval: int = PROGRESS_INTERVAL
    cache_save_interval: float = CACHE_SAVE_INTERVAL
    default_class_id: int = 0

    def __post_init__(self):
        object.__setattr__(self, "similarity_mode",
                           SimilarityMode.parse(self.similarity_mode))
        if not 0.0 <= self.merge_iou <= 1.0:
            raise ValueError(f"merge_iou must be in [0, 1], got {self.merge_iou}")
        if self.search_stride < 1:
            raise ValueError(f"search_stride must be >= 1, got {self.search_stride}")

    @classmethod
    def from_env(cls, **overrides) -> "PropagationConfig":
        """Build a config from the environment, then apply overrides."""
        config = cls()
        if overrides:
            config = replace(config, **overrides)
        logger.debug(f"Propagation config: {config}")
        return config

    def with_overrides(self, **overrides) -> "PropagationConfig":
        """Return a copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self
