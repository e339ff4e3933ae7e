"""
Label, suggestion and run-result types shared across the package.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple, Optional, Dict, Any

from .geometry import Rect, EMPTY_RECT


class SuggestionSource(str, Enum):
    IMAGE_SIMILARITY = "ImageSimilarity"
    OBJECT_SIMILARITY = "ObjectSimilarity"
    TRACKING = "Tracking"


@dataclass
class Label:
    """A committed label: part of an image's ground truth."""

    name: str
    rect: Rect
    class_id: int = 0


@dataclass
class Suggestion:
    """A proposed label waiting for review."""

    rect: Rect
    class_id: int
    score: float
    source: SuggestionSource
    source_image: Optional[str] = None
    source_label_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        x, y, w, h = self.rect
        return {
            "id": self.id,
            "x": x,
            "y": y,
            "width": w,
            "height": h,
            "class_id": self.class_id,
            "score": self.score,
            "source": self.source.value,
            "source_image": self.source_image,
            "source_label_id": self.source_label_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Suggestion":
        rect = (float(data.get("x", 0.0)), float(data.get("y", 0.0)),
                float(data.get("width", 0.0)), float(data.get("height", 0.0)))
        kwargs = {}
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        return cls(
            rect=rect,
            class_id=int(data.get("class_id", 0)),
            score=float(data.get("score", 0.0)),
            source=SuggestionSource(data.get("source", SuggestionSource.IMAGE_SIMILARITY.value)),
            source_image=data.get("source_image"),
            source_label_id=data.get("source_label_id"),
            **kwargs,
        )


class ImageRecord(NamedTuple):
    """Image path with cached original dimensions."""

    path: str
    width: int
    height: int

    @property
    def size(self):
        return (self.width, self.height)


class MatchResult(NamedTuple):
    score: float
    rect: Rect = EMPTY_RECT


@dataclass
class PropagationSummary:
    """Net additions made by one propagation run."""

    suggestions_added: int = 0
    labels_added: int = 0
    images_affected: int = 0

    def merge(self, other: "PropagationSummary") -> "PropagationSummary":
        """Combine two summaries; images_affected is summed, not deduplicated."""
        return PropagationSummary(
            suggestions_added=self.suggestions_added + other.suggestions_added,
            labels_added=self.labels_added + other.labels_added,
            images_affected=self.images_affected + other.images_affected,
        )
