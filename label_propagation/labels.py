"""
Committed label storage.

Holds the ground-truth boxes of every image plus the class registry, and
serializes read-modify-write updates per image: workers targeting different
images never wait on each other, workers targeting the same image take turns.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, List, Tuple

from .geometry import Rect, compute_iou, is_empty
from .models import Label, Suggestion

logger = logging.getLogger(__name__)


class LabelStore:
    """
    Per-image committed labels with a class registry.

    Args:
        class_ids: Known class ids. When empty, every class id is accepted.
        default_class_id: Replacement for unknown class ids.
    """

    def __init__(self, class_ids: Iterable[int] = (), default_class_id: int = 0):
        self._labels: Dict[str, List[Label]] = {}
        self._class_ids = set(int(c) for c in class_ids)
        self.default_class_id = default_class_id
        self._key_locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Locking and classes
    # ------------------------------------------------------------------

    @contextmanager
    def lock(self, file_name: str):
        """Hold the per-image lock for a read-modify-write sequence."""
        with self._registry_lock:
            key_lock = self._key_locks.get(file_name)
            if key_lock is None:
                key_lock = self._key_locks[file_name] = threading.RLock()
        with key_lock:
            yield

    def register_class(self, class_id: int) -> None:
        with self._registry_lock:
            self._class_ids.add(int(class_id))

    @property
    def class_ids(self):
        return frozenset(self._class_ids)

    def resolve_class_id(self, class_id: int) -> int:
        """Known class ids pass through; unknown ones become the default."""
        if not self._class_ids or class_id in self._class_ids:
            return class_id
        return self.default_class_id

    # ------------------------------------------------------------------
    # Label access
    # ------------------------------------------------------------------

    def get_labels(self, file_name: str) -> List[Label]:
        """Copy of the labels of one image (empty if none)."""
        with self.lock(file_name):
            return list(self._labels.get(file_name, ()))

    def save_labels(self, file_name: str, labels: Iterable[Label]) -> None:
        with self.lock(file_name):
            self._labels[file_name] = list(labels)

    def has_labels(self, file_name: str) -> bool:
        return bool(self._labels.get(file_name))

    def all_labels(self) -> Dict[str, List[Label]]:
        """Snapshot of every image's labels."""
        with self._registry_lock:
            files = list(self._labels)
        return {f: self.get_labels(f) for f in files}

    def clear(self) -> None:
        with self._registry_lock:
            self._labels.clear()

    def mutable_labels(self, file_name: str) -> List[Label]:
        # Caller holds lock(file_name)
        return self._labels.setdefault(file_name, [])

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def add_labels(self, file_name: str, suggestions: Iterable[Suggestion],
                   merge_iou: float) -> int:
        """
        Commit suggestions directly (auto-accept), skipping duplicates.

        A suggestion overlapping any existing label of the image (including
        ones committed earlier in the same call) at IoU >= merge_iou is
        dropped.

        Returns:
            Number of labels added.
        """
        added = 0
        with self.lock(file_name):
            labels = self.mutable_labels(file_name)
            for suggestion in suggestions:
                rect = suggestion.rect
                if is_empty(rect):
                    continue
                if any(compute_iou(l.rect, rect) >= merge_iou for l in labels):
                    continue
                labels.append(Label(
                    f"Suggested Label {len(labels) + 1}", rect,
                    self.resolve_class_id(suggestion.class_id),
                ))
                added += 1

        if added:
            logger.debug(f"Committed {added} propagated labels to {file_name}")
        return added

    def add_detections(self, file_name: str,
                       detections: Iterable[Tuple[Rect, int]]) -> int:
        """
        Append detector output as committed labels.

        Args:
            detections: (rect, class_id) pairs. Boxes with non-positive
                size are skipped.

        Returns:
            Number of labels added.
        """
        added = 0
        with self.lock(file_name):
            labels = self.mutable_labels(file_name)
            for rect, class_id in detections:
                if is_empty(rect):
                    logger.warning(
                        f"Skipping invalid detection {rect[2]}x{rect[3]} on {file_name}"
                    )
                    continue
                labels.append(Label(f"AI Label {len(labels) + 1}",
                                    tuple(float(v) for v in rect),
                                    self.resolve_class_id(class_id)))
                added += 1
        return added

    def overlaps_label(self, file_name: str, rect: Rect, merge_iou: float) -> bool:
        """True if rect reaches merge_iou against any committed label."""
        return any(compute_iou(l.rect, rect) >= merge_iou
                   for l in self._labels.get(file_name, ()))
