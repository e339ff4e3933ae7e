"""
Label propagation engine.

Orchestrates the three candidate-generation algorithms:
    1. Image similarity: copy every label of a source image onto candidates
       whose whole-image similarity clears a threshold, scaled by the
       candidate/source dimension ratio.
    2. Object similarity: rank candidates by image similarity, then locate
       each source label's crop in the top candidates by template matching.
    3. Tracking: follow each label of an anchor frame a few frames forward
       and backward, searching a window around its last known position.

Results go to the SuggestionStore for review, or straight into committed
labels in auto-accept mode. Work fans out over a thread pool; cancellation
is polled per comparison or frame, and a cancelled run returns the partial
summary of what it already added.
"""

import logging
import threading
import weakref
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from .catalog import ImageCatalog
from .config import PropagationConfig
from .geometry import scale_rect, tracking_window, is_empty
from .labels import LabelStore
from .models import Label, ImageRecord, PropagationSummary, Suggestion, SuggestionSource
from .preprocessing import crop_region
from .progress import (
    ProgressCallback, ProgressReporter,
    PHASE_IMAGE_SIMILARITY, PHASE_OBJECT_RANKING,
    PHASE_OBJECT_MATCHING, PHASE_TRACKING,
)
from .scoring import passes_threshold, meets_min_size, rank_results
from .similarity import SimilarityIndex
from .suggestions import SuggestionStore
from .template_matcher import match_template

logger = logging.getLogger(__name__)


def _same_file(a: str, b: str) -> bool:
    return a.casefold() == b.casefold()


class _PixelCache:
    """Decoded images shared by the workers of one run."""

    def __init__(self, catalog: ImageCatalog):
        self.catalog = catalog
        self._images: Dict[str, np.ndarray] = {}
        self._lock = threading.Lock()

    def get(self, file_name: str) -> np.ndarray:
        """Decoded pixels, loaded on first use. Raises OSError."""
        key = file_name.casefold()
        cached = self._images.get(key)
        if cached is not None:
            return cached
        pixels = self.catalog.load_pixels(file_name)
        with self._lock:
            return self._images.setdefault(key, pixels)

    def clear(self) -> None:
        with self._lock:
            self._images.clear()


class _CapTracker:
    """Per-image count of additions made by this run, against a cap."""

    def __init__(self, cap: int):
        self.cap = cap
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def reached(self, file_name: str) -> bool:
        if self.cap <= 0:
            return False
        return self._counts.get(file_name.casefold(), 0) >= self.cap

    def reserve(self, file_name: str, requested: int) -> int:
        """Claim up to `requested` slots; returns how many were granted."""
        key = file_name.casefold()
        with self._lock:
            used = self._counts.get(key, 0)
            granted = requested if self.cap <= 0 else max(0, min(requested, self.cap - used))
            self._counts[key] = used + granted
        return granted

    def release(self, file_name: str, count: int) -> None:
        if count <= 0:
            return
        key = file_name.casefold()
        with self._lock:
            self._counts[key] = max(0, self._counts.get(key, 0) - count)


class _RunTally:
    """Thread-safe PropagationSummary accumulator."""

    def __init__(self):
        self._suggestions = 0
        self._labels = 0
        self._images: Set[str] = set()
        self._lock = threading.Lock()

    def record(self, file_name: str, added: int, committed: bool) -> None:
        if added <= 0:
            return
        with self._lock:
            if committed:
                self._labels += added
            else:
                self._suggestions += added
            self._images.add(file_name.casefold())

    def summary(self) -> PropagationSummary:
        with self._lock:
            return PropagationSummary(self._suggestions, self._labels, len(self._images))


class PropagationOrchestrator:
    """
    Runs label propagation over a set of images.

    Args:
        config: Thresholds and default run options.
        catalog: Known images and their dimensions.
        label_store: Committed labels.
        suggestion_store: Pending suggestions. Defaults to a new store on
            top of label_store.
        similarity: Whole-image similarity index. Defaults to a new index
            using the catalog's loader.
    """

    def __init__(self,
                 config: PropagationConfig,
                 catalog: ImageCatalog,
                 label_store: LabelStore,
                 suggestion_store: Optional[SuggestionStore] = None,
                 similarity: Optional[SimilarityIndex] = None):
        self.config = config
        self.catalog = catalog
        self.labels = label_store
        self.suggestions = suggestion_store or SuggestionStore(label_store)
        self.similarity = similarity or SimilarityIndex(
            loader=catalog.loader, save_interval=config.cache_save_interval)
        # One event per run started without a cancel_event; dropped with the run
        self._run_events = weakref.WeakSet()
        self._run_events_lock = threading.Lock()

    def cancel(self) -> None:
        """
        Stop every run in flight that was started without its own
        cancel_event. Runs started later are not affected.
        """
        with self._run_events_lock:
            events = list(self._run_events)
        for event in events:
            event.set()

    def _token(self, cancel_event: Optional[threading.Event]) -> threading.Event:
        if cancel_event is not None:
            return cancel_event
        token = threading.Event()
        with self._run_events_lock:
            self._run_events.add(token)
        return token

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    def _fan_out(self, fn: Callable, items: Sequence, cfg: PropagationConfig,
                 token: threading.Event) -> List:
        """
        Run fn over items on a thread pool.

        Once the token is set, units that haven't started are cancelled and
        units in flight run to completion.

        Returns:
            Results in input order (None for cancelled units).
        """
        items = list(items)
        results = [None] * len(items)
        if not items:
            return results

        with ThreadPoolExecutor(max_workers=cfg.max_workers) as executor:
            futures = {executor.submit(fn, item): i for i, item in enumerate(items)}
            for future in as_completed(futures):
                if future.cancelled():
                    continue
                results[futures[future]] = future.result()
                if token.is_set():
                    for pending in futures:
                        pending.cancel()
        return results

    def _commit(self, file_name: str, suggestions: List[Suggestion],
                cfg: PropagationConfig, caps: _CapTracker, tally: _RunTally) -> int:
        """Send candidates to the labels or the suggestion store, within the cap."""
        if not suggestions:
            return 0
        granted = caps.reserve(file_name, len(suggestions))
        if granted <= 0:
            return 0

        batch = suggestions[:granted]
        if cfg.auto_accept:
            added = self.labels.add_labels(file_name, batch, cfg.merge_iou)
        else:
            added = self.suggestions.add_suggestions(file_name, batch, cfg.merge_iou)

        caps.release(file_name, granted - added)
        tally.record(file_name, added, committed=cfg.auto_accept)
        return added

    def _eligible_candidate(self, source: str, candidate: str,
                            cfg: PropagationConfig) -> Optional[ImageRecord]:
        if _same_file(source, candidate):
            return None
        record = self.catalog.get(candidate)
        if record is None:
            return None
        if cfg.skip_labeled and self.labels.has_labels(candidate):
            return None
        return record

    def _finish(self, name: str, tally: _RunTally, token: threading.Event) -> PropagationSummary:
        with self._run_events_lock:
            self._run_events.discard(token)
        self.similarity.flush()
        summary = tally.summary()
        state = "cancelled" if token.is_set() else "complete"
        logger.info(
            f"{name} propagation {state}: {summary.suggestions_added} suggestions, "
            f"{summary.labels_added} labels on {summary.images_affected} images"
        )
        return summary

    # ------------------------------------------------------------------
    # 1. Image similarity
    # ------------------------------------------------------------------

    def run_image_similarity(self,
                             source_files: Iterable[str],
                             candidate_files: Iterable[str],
                             threshold: Optional[float] = None,
                             auto_accept: Optional[bool] = None,
                             skip_labeled: Optional[bool] = None,
                             max_suggestions_per_image: Optional[int] = None,
                             merge_iou: Optional[float] = None,
                             progress: Optional[ProgressCallback] = None,
                             cancel_event: Optional[threading.Event] = None
                             ) -> PropagationSummary:
        """
        Propagate whole label sets to similar images.

        For every (labeled source, candidate) pair whose image similarity is
        at least `threshold`, each source label is scaled by the
        candidate/source dimension ratio and proposed on the candidate with
        the similarity as its score.

        Returns:
            Summary of net additions (partial if cancelled).
        """
        cfg = self.config.with_overrides(
            image_threshold=threshold, auto_accept=auto_accept,
            skip_labeled=skip_labeled, merge_iou=merge_iou,
            max_suggestions_per_image=max_suggestions_per_image,
        )
        token = self._token(cancel_event)
        sources = list(source_files)
        candidates = list(candidate_files)

        reporter = ProgressReporter(progress, PHASE_IMAGE_SIMILARITY,
                                    len(sources) * len(candidates), cfg.progress_interval)
        caps = _CapTracker(cfg.max_suggestions_per_image)
        tally = _RunTally()

        pairs = []
        for source in sources:
            record = self.catalog.get(source)
            labels = self.labels.get_labels(source) if record is not None else []
            if not labels:
                reporter.tick(len(candidates))
                continue
            pairs.extend((source, record, labels, c) for c in candidates)

        def compare(pair):
            source, source_record, source_labels, candidate = pair
            if token.is_set():
                return
            reporter.tick()

            target = self._eligible_candidate(source, candidate, cfg)
            if target is None or caps.reached(candidate):
                return

            try:
                score = self.similarity.similarity(
                    source_record.path, target.path, cfg.similarity_mode)
            except OSError as e:
                logger.warning(f"Skipping pair {source} -> {candidate}: {e}")
                return
            if score < cfg.image_threshold:
                return

            proposed = []
            for label in source_labels:
                rect = scale_rect(label.rect, source_record.size, target.size)
                if rect[2] <= 1 or rect[3] <= 1:
                    continue
                proposed.append(Suggestion(
                    rect, label.class_id, score, SuggestionSource.IMAGE_SIMILARITY,
                    source_image=source, source_label_id=label.name,
                ))
            self._commit(candidate, proposed, cfg, caps, tally)

        self._fan_out(compare, pairs, cfg, token)
        reporter.finish()
        return self._finish("Image similarity", tally, token)

    # ------------------------------------------------------------------
    # 2. Object similarity
    # ------------------------------------------------------------------

    def run_object_similarity(self,
                              source_files: Iterable[str],
                              candidate_files: Iterable[str],
                              threshold: Optional[float] = None,
                              auto_accept: Optional[bool] = None,
                              skip_labeled: Optional[bool] = None,
                              restrict_to_similar: Optional[bool] = None,
                              ranking_threshold: Optional[float] = None,
                              max_suggestions_per_image: Optional[int] = None,
                              min_box_size: Optional[int] = None,
                              candidate_limit: Optional[int] = None,
                              search_stride: Optional[int] = None,
                              merge_iou: Optional[float] = None,
                              progress: Optional[ProgressCallback] = None,
                              cancel_event: Optional[threading.Event] = None
                              ) -> PropagationSummary:
        """
        Find each labeled object of the sources in the best candidates.

        Per source image with labels:
            1. Rank eligible candidates by image similarity (or take them in
               input order when restrict_to_similar is off) and keep the
               top candidate_limit.
            2. Crop every label at least min_box_size wide and high.
            3. Template-match each crop against each ranked candidate and
               propose the best location when its score clears the match
               floor and `threshold`.

        Returns:
            Summary of net additions (partial if cancelled).
        """
        cfg = self.config.with_overrides(
            object_threshold=threshold, auto_accept=auto_accept,
            skip_labeled=skip_labeled, restrict_to_similar=restrict_to_similar,
            ranking_threshold=ranking_threshold, min_box_size=min_box_size,
            max_suggestions_per_image=max_suggestions_per_image,
            candidate_limit=candidate_limit, search_stride=search_stride,
            merge_iou=merge_iou,
        )
        token = self._token(cancel_event)
        sources = list(source_files)
        candidates = list(candidate_files)

        ranking = ProgressReporter(progress, PHASE_OBJECT_RANKING,
                                   len(sources) * len(candidates), cfg.progress_interval)
        caps = _CapTracker(cfg.max_suggestions_per_image)
        tally = _RunTally()
        pixels = _PixelCache(self.catalog)

        try:
            for source in sources:
                if token.is_set():
                    break

                record = self.catalog.get(source)
                labels = self.labels.get_labels(source) if record is not None else []
                if not labels:
                    ranking.tick(len(candidates))
                    continue

                try:
                    source_pixels = pixels.get(source)
                except OSError as e:
                    logger.warning(f"Skipping source {source}: {e}")
                    ranking.tick(len(candidates))
                    continue

                ranked = self._rank_candidates(source, record, candidates, cfg, ranking, token)
                if token.is_set() or not ranked:
                    continue

                self._match_objects(source, source_pixels, labels, ranked,
                                    cfg, caps, tally, pixels, progress, token)
        finally:
            pixels.clear()

        ranking.finish()
        return self._finish("Object similarity", tally, token)

    def _rank_candidates(self, source: str, source_record: ImageRecord,
                         candidates: List[str], cfg: PropagationConfig,
                         reporter: ProgressReporter,
                         token: threading.Event) -> List[str]:
        """Eligible candidates for one source, best first, at most candidate_limit."""

        def check(candidate):
            if token.is_set():
                return None
            reporter.tick()
            target = self._eligible_candidate(source, candidate, cfg)
            if target is None:
                return None
            if cfg.restrict_to_similar:
                try:
                    # Warm the fingerprint in parallel; ranking reads the cache
                    self.similarity.fingerprint(target.path, cfg.similarity_mode)
                except OSError as e:
                    logger.warning(f"Skipping candidate {candidate}: {e}")
                    return None
            return candidate, target

        eligible = [r for r in self._fan_out(check, candidates, cfg, token) if r is not None]
        if not eligible:
            return []

        if not cfg.restrict_to_similar:
            limit = cfg.candidate_limit if cfg.candidate_limit > 0 else len(eligible)
            return [candidate for candidate, _ in eligible[:limit]]

        by_path = {target.path: candidate for candidate, target in eligible}
        try:
            scored = self.similarity.rank(
                source_record.path, list(by_path), cfg.similarity_mode)
        except OSError as e:
            logger.warning(f"Skipping source {source}: {e}")
            return []

        scored = [(by_path[path], s) for path, s in scored if s >= cfg.ranking_threshold]
        ranked = rank_results(scored, cfg.candidate_limit)
        logger.debug(f"{source}: {len(ranked)} of {len(eligible)} candidates ranked")
        return [candidate for candidate, _ in ranked]

    def _match_objects(self, source: str, source_pixels: np.ndarray,
                       labels: List[Label], ranked: List[str],
                       cfg: PropagationConfig, caps: _CapTracker, tally: _RunTally,
                       pixels: _PixelCache, progress: Optional[ProgressCallback],
                       token: threading.Event) -> None:
        reporter = ProgressReporter(progress, PHASE_OBJECT_MATCHING,
                                    len(labels) * len(ranked), cfg.progress_interval)

        for label in labels:
            if token.is_set():
                break

            template = None
            if meets_min_size(label.rect, cfg.min_box_size):
                template = crop_region(source_pixels, label.rect)
            if template is None:
                reporter.tick(len(ranked))
                continue

            def match(candidate, label=label, template=template):
                if token.is_set():
                    return
                reporter.tick()
                if caps.reached(candidate):
                    return
                try:
                    candidate_pixels = pixels.get(candidate)
                except OSError as e:
                    logger.warning(f"Skipping candidate {candidate}: {e}")
                    return

                # Candidates already run in parallel; keep each search single-threaded
                result = match_template(
                    candidate_pixels, template, stride=cfg.search_stride,
                    max_dim=cfg.match_max_dim, min_template=cfg.match_min_template,
                    max_workers=1,
                )
                if not passes_threshold(result.score, cfg.object_threshold):
                    return
                if not meets_min_size(result.rect, cfg.min_box_size):
                    return

                self._commit(candidate, [Suggestion(
                    result.rect, label.class_id, result.score,
                    SuggestionSource.OBJECT_SIMILARITY,
                    source_image=source, source_label_id=label.name,
                )], cfg, caps, tally)

            self._fan_out(match, ranked, cfg, token)

        reporter.finish()

    # ------------------------------------------------------------------
    # 3. Tracking
    # ------------------------------------------------------------------

    def run_tracking(self,
                     start_file: str,
                     ordered_files: Sequence[str],
                     frame_window: Optional[int] = None,
                     threshold: Optional[float] = None,
                     auto_accept: Optional[bool] = None,
                     skip_labeled: Optional[bool] = None,
                     max_suggestions_per_image: Optional[int] = None,
                     min_box_size: Optional[int] = None,
                     search_stride: Optional[int] = None,
                     merge_iou: Optional[float] = None,
                     progress: Optional[ProgressCallback] = None,
                     cancel_event: Optional[threading.Event] = None
                     ) -> PropagationSummary:
        """
        Track the anchor frame's labels through neighbouring frames.

        Visits up to frame_window frames after and before the anchor,
        clamped to the sequence. The two directions run concurrently; frames
        within a direction run in order because each label's search window
        follows its last match:

            window = tracking_window(last_rect)   # 2x object size
            match  = template search inside window
            if match clears floor and threshold:
                last_rect = match.rect             # drift carries forward
                propose match.rect

        Returns:
            Summary of net additions (partial if cancelled).
        """
        cfg = self.config.with_overrides(
            frame_window=frame_window, tracking_threshold=threshold,
            auto_accept=auto_accept, skip_labeled=skip_labeled,
            max_suggestions_per_image=max_suggestions_per_image,
            min_box_size=min_box_size, search_stride=search_stride,
            merge_iou=merge_iou,
        )
        token = self._token(cancel_event)
        frames = list(ordered_files)
        tally = _RunTally()

        start_index = next(
            (i for i, f in enumerate(frames) if _same_file(f, start_file)), -1)
        if start_index < 0:
            logger.warning(f"Tracking anchor {start_file} is not in the frame list")
            return tally.summary()

        anchor = frames[start_index]
        record = self.catalog.get(anchor)
        labels = self.labels.get_labels(anchor) if record is not None else []
        if not labels:
            return tally.summary()

        pixels = _PixelCache(self.catalog)
        try:
            try:
                anchor_pixels = pixels.get(anchor)
            except OSError as e:
                logger.warning(f"Cannot track from {anchor}: {e}")
                return tally.summary()

            tracks = []
            for label in labels:
                if not meets_min_size(label.rect, cfg.min_box_size):
                    continue
                template = crop_region(anchor_pixels, label.rect)
                if template is not None:
                    tracks.append((label, template))

            window = max(0, cfg.frame_window)
            forward = list(range(start_index + 1, min(len(frames) - 1, start_index + window) + 1))
            backward = list(range(start_index - 1, max(0, start_index - window) - 1, -1))

            reporter = ProgressReporter(progress, PHASE_TRACKING,
                                        (len(forward) + len(backward)) * len(tracks),
                                        cfg.progress_interval)
            caps = _CapTracker(cfg.max_suggestions_per_image)

            def walk(indices):
                last_rects = [label.rect for label, _ in tracks]
                for index in indices:
                    if token.is_set():
                        break
                    self._track_frame(anchor, frames[index], tracks, last_rects,
                                      cfg, caps, tally, reporter, pixels, token)

            if tracks:
                with ThreadPoolExecutor(max_workers=2) as executor:
                    directions = [executor.submit(walk, forward), executor.submit(walk, backward)]
                    for direction in directions:
                        direction.result()

            reporter.finish()
        finally:
            pixels.clear()

        return self._finish("Tracking", tally, token)

    def _track_frame(self, anchor: str, file_name: str,
                     tracks: List[Tuple[Label, np.ndarray]], last_rects: List,
                     cfg: PropagationConfig, caps: _CapTracker, tally: _RunTally,
                     reporter: ProgressReporter, pixels: _PixelCache,
                     token: threading.Event) -> None:
        record = self.catalog.get(file_name)
        if (record is None
                or caps.reached(file_name)
                or (cfg.skip_labeled and self.labels.has_labels(file_name))):
            reporter.tick(len(tracks))
            return

        try:
            frame = pixels.get(file_name)
        except OSError as e:
            logger.warning(f"Skipping frame {file_name}: {e}")
            reporter.tick(len(tracks))
            return

        for i, (label, template) in enumerate(tracks):
            if token.is_set():
                break
            reporter.tick()

            window = tracking_window(last_rects[i], record.width, record.height)
            if is_empty(window):
                continue

            result = match_template(
                frame, template, search_rect=window, stride=cfg.search_stride,
                max_dim=cfg.match_max_dim, min_template=cfg.match_min_template,
                max_workers=cfg.max_workers,
            )
            if not passes_threshold(result.score, cfg.tracking_threshold):
                continue
            if not meets_min_size(result.rect, cfg.min_box_size):
                continue

            last_rects[i] = result.rect
            self._commit(file_name, [Suggestion(
                result.rect, label.class_id, result.score, SuggestionSource.TRACKING,
                source_image=anchor, source_label_id=label.name,
            )], cfg, caps, tally)

            if caps.reached(file_name):
                break
