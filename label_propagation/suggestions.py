"""
Pending suggestion lifecycle.

Suggestions are kept per image until a reviewer accepts or rejects them.
Every mutation of an image's suggestions runs under that image's lock in the
LabelStore, so accepting a suggestion removes it from the pending list and
appends it to the committed labels in one step: a suggestion is never in
both places.
"""

import logging
from typing import Dict, Iterable, List, Optional

from .geometry import compute_iou, is_empty
from .labels import LabelStore
from .models import Label, Suggestion

logger = logging.getLogger(__name__)


class SuggestionStore:
    """
    Pending suggestions per image, layered on a LabelStore.

    Args:
        label_store: Committed labels and class registry. Its per-image
            locks also guard the suggestions of that image.
    """

    def __init__(self, label_store: LabelStore):
        self.label_store = label_store
        self._pending: Dict[str, List[Suggestion]] = {}

    def get_suggestions(self, file_name: str) -> List[Suggestion]:
        with self.label_store.lock(file_name):
            return list(self._pending.get(file_name, ()))

    def suggestion_count(self, file_name: str) -> int:
        return len(self._pending.get(file_name, ()))

    def all_suggestions(self) -> Dict[str, List[Suggestion]]:
        return {f: self.get_suggestions(f) for f in list(self._pending)
                if self._pending.get(f)}

    def add_suggestions(self, file_name: str, incoming: Iterable[Suggestion],
                        merge_iou: float) -> int:
        """
        Merge candidate suggestions into an image's pending list.

        For each candidate:
            - boxes with non-positive size are dropped
            - an unknown class id is remapped to the default class
            - a box overlapping a committed label (IoU >= merge_iou) is
              dropped, the object is already labeled
            - a box overlapping a pending suggestion of the same class keeps
              only the higher-scoring of the two, updated in place
            - anything else is appended

        Args:
            file_name: Target image.
            incoming: Candidate suggestions.
            merge_iou: Overlap at or above which two boxes are one object.

        Returns:
            Net increase in the image's pending count.
        """
        store = self.label_store
        with store.lock(file_name):
            pending = self._pending.setdefault(file_name, [])
            before = len(pending)

            for candidate in incoming:
                if is_empty(candidate.rect):
                    continue

                candidate.class_id = store.resolve_class_id(candidate.class_id)

                if store.overlaps_label(file_name, candidate.rect, merge_iou):
                    continue

                duplicate = next(
                    (s for s in pending
                     if s.class_id == candidate.class_id
                     and compute_iou(s.rect, candidate.rect) >= merge_iou),
                    None,
                )
                if duplicate is None:
                    pending.append(candidate)
                elif candidate.score > duplicate.score:
                    duplicate.rect = candidate.rect
                    duplicate.score = candidate.score
                    duplicate.source = candidate.source
                    duplicate.source_image = candidate.source_image
                    duplicate.source_label_id = candidate.source_label_id

            added = len(pending) - before

        if added:
            logger.debug(f"Added {added} suggestions to {file_name}")
        return added

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def _promote(self, file_name: str, suggestions: List[Suggestion]) -> None:
        # Caller holds the image lock
        labels = self.label_store.mutable_labels(file_name)
        for suggestion in suggestions:
            labels.append(Label(
                f"Suggested Label {len(labels) + 1}", suggestion.rect,
                self.label_store.resolve_class_id(suggestion.class_id),
            ))

    def accept_suggestion(self, file_name: str, suggestion_id: str) -> bool:
        """Move one suggestion into the committed labels."""
        with self.label_store.lock(file_name):
            pending = self._pending.get(file_name, [])
            for i, suggestion in enumerate(pending):
                if suggestion.id == suggestion_id:
                    del pending[i]
                    self._promote(file_name, [suggestion])
                    return True
        return False

    def accept_all_suggestions(self, file_name: str) -> int:
        """Move every pending suggestion of an image into its labels."""
        with self.label_store.lock(file_name):
            pending = self._pending.pop(file_name, [])
            self._promote(file_name, pending)
        if pending:
            logger.info(f"Accepted {len(pending)} suggestions on {file_name}")
        return len(pending)

    def reject_suggestion(self, file_name: str, suggestion_id: str) -> bool:
        with self.label_store.lock(file_name):
            pending = self._pending.get(file_name, [])
            for i, suggestion in enumerate(pending):
                if suggestion.id == suggestion_id:
                    del pending[i]
                    return True
        return False

    def reject_all_suggestions(self, file_name: str) -> int:
        with self.label_store.lock(file_name):
            return len(self._pending.pop(file_name, []))

    def clear_all_suggestions(self) -> int:
        """Drop every pending suggestion. Returns the number removed."""
        removed = 0
        for file_name in list(self._pending):
            removed += self.reject_all_suggestions(file_name)
        if removed:
            logger.info(f"Cleared {removed} pending suggestions")
        return removed

    def find(self, file_name: str, suggestion_id: str) -> Optional[Suggestion]:
        for suggestion in self.get_suggestions(file_name):
            if suggestion.id == suggestion_id:
                return suggestion
        return None
