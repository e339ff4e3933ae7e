"""
Throttled, thread-safe progress reporting.

Propagation runs can make hundreds of thousands of comparisons; reporting
each one would flood whatever UI consumes the stream. Reports are sent every
`interval` ticks, plus a forced final report when a phase ends.
"""

import logging
import threading
from typing import Callable, Optional

from .config import PROGRESS_INTERVAL

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]

PHASE_IMAGE_SIMILARITY = "image"
PHASE_OBJECT_RANKING = "object-ranking"
PHASE_OBJECT_MATCHING = "object-matching"
PHASE_TRACKING = "tracking"


class ProgressReporter:
    """
    Counter for one phase of a run.

    Args:
        callback: Receives (phase, current, total). None disables reporting.
        phase: Phase identifier.
        total: Expected number of ticks.
        interval: Report every N ticks.
    """

    def __init__(self, callback: Optional[ProgressCallback], phase: str,
                 total: int, interval: int = PROGRESS_INTERVAL):
        self.callback = callback
        self.phase = phase
        self.total = total
        self.interval = max(1, interval)
        self._current = 0
        self._lock = threading.Lock()

    @property
    def current(self) -> int:
        return self._current

    def tick(self, count: int = 1) -> None:
        with self._lock:
            before = self._current
            self._current += count
            current = self._current
        if current // self.interval > before // self.interval:
            self._report(current)

    def finish(self) -> None:
        """Force a final total/total report."""
        self._report(self.total, force=True)

    def _report(self, current: int, force: bool = False) -> None:
        if self.callback is None or self.total <= 0:
            return
        if not force:
            current = min(current, self.total)
        try:
            self.callback(self.phase, current, self.total)
        except Exception as e:
            # A broken progress sink must not kill the run
            logger.warning(f"Progress callback failed ({self.phase}): {e}")
