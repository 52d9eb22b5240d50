# ALGO:
"""
Fusion: every primary classifier runs on its own worker against the same image and
its hits are projected back to original image coordinates, each tagged with the
classifier's static confidence. An optional pre-existing detection set (manual or
cached) joins as one more virtual classifier.

All candidates are then merged with a two-axis sweep: sort by (top, left) descending
and fold every adjacent conflicting pair into its union, then do the same sorted by
(left, top). Rounds repeat until nothing merges, so the output is a fixed point of the
merge. Only adjacent pairs are ever compared; in heavily overlapping layouts two
conflicting boxes that never become neighbours in either order can both survive.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from basemodels import ClassifierSpec, Detection, DetectionSet, FusionParams, ImageContext, Rect
from image_inference import FeatureDetector, ImagePreparer

LOGGER = logging.getLogger("cascadefusion.fusion")

SortKey = Callable[[Detection], Tuple]


def iou(a: Rect, b: Rect) -> float:
    inter = a.intersection_area(b)
    if inter == 0:
        return 0.0
    return inter / float(a.area + b.area - inter)


def conflicts(a: Detection, b: Detection, iou_thresh: float = 0.0) -> bool:
    """
    Duplicate test. Boxes must overlap with IoU above iou_thresh; edge contact is
    not overlap. Two different identity labels never conflict.
    """
    if a.label and b.label and a.label != b.label:
        return False
    return iou(a.rect, b.rect) > iou_thresh


def merge_detections(a: Detection, b: Detection) -> Detection:
    keep = a if a.confidence >= b.confidence else b
    return Detection(
        rect=a.rect.union(b.rect),
        confidence=max(a.confidence, b.confidence),
        label=a.label or b.label,
        source=keep.source,
    )


def det_str(d: Detection) -> str:
    tag = f" label={d.label}" if d.label else ""
    return f"{d.source or '?'} conf={d.confidence:.3f} rect={d.rect.xyxy}{tag}"


# Duplicate sweep #####################################
def _by_top_left(d: Detection) -> Tuple:
    r = d.rect
    return (r.top, r.left, r.bottom, r.right, d.confidence, d.label or "", d.source)


def _by_left_top(d: Detection) -> Tuple:
    r = d.rect
    return (r.left, r.top, r.right, r.bottom, d.confidence, d.label or "", d.source)


def _sweep(dets: Sequence[Detection], key: SortKey, iou_thresh: float) -> Tuple[List[Detection], int]:
    merged: List[Detection] = []
    merges = 0
    for det in sorted(dets, key=key, reverse=True):
        if merged and conflicts(merged[-1], det, iou_thresh):
            LOGGER.debug("[MERGE] %s + %s", det_str(merged[-1]), det_str(det))
            merged[-1] = merge_detections(merged[-1], det)
            merges += 1
        else:
            merged.append(det)
    return merged, merges


def merge_duplicates(detection_sets: Sequence[DetectionSet], iou_thresh: float = 0.0) -> DetectionSet:
    candidates = [d for ds in detection_sets for d in ds.detections]
    total = len(candidates)

    rounds = 0
    while True:
        candidates, by_rows = _sweep(candidates, _by_top_left, iou_thresh)
        candidates, by_cols = _sweep(candidates, _by_left_top, iou_thresh)
        rounds += 1
        if by_rows + by_cols == 0:
            break

    LOGGER.debug("Merge: %d candidates -> %d detections in %d round(s)", total, len(candidates), rounds)
    return DetectionSet(detections=candidates)


# Parallel fan-out #####################################
class DetectionFusion:
    """
    Runs primary classifiers on a shared thread pool and merges their hits.

    Worker failures are fatal for the call: the first ConfigurationError or
    DetectionFailure (in classifier order) is re-raised once the pool reports
    it. With `classifier_timeout` set, each classifier gets that long from the
    moment a worker starts it; ones that run over are dropped with a warning
    and the rest are merged.
    """
    def __init__(
        self,
        engine: FeatureDetector,
        preparer: Optional[ImagePreparer] = None,
        params: Optional[FusionParams] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.engine = engine
        self.params = params or FusionParams()
        self.preparer = preparer or ImagePreparer(enhance=self.params.enhance)
        self._executor = executor
        self._owns_executor = executor is None

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.params.max_workers,
                thread_name_prefix="cascadefusion",
            )
        return self._executor

    def close(self) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def run_classifier(self, image: np.ndarray, spec: ClassifierSpec) -> DetectionSet:
        working, scale = self.preparer.load_for_detection(image, spec)
        rects = self.engine.detect(spec, working, spec.scale_factor, spec.min_neighbors)
        inverse = 1.0 / scale
        LOGGER.debug("[%s] %d hit(s) at working scale %.3f", spec.name, len(rects), scale)
        return DetectionSet.from_rects((r.scaled(inverse) for r in rects), spec.confidence, source=spec.name)

    def _timed_run(self, started: Dict[int, float], index: int, image: np.ndarray,
                   spec: ClassifierSpec) -> DetectionSet:
        started[index] = time.monotonic()
        return self.run_classifier(image, spec)

    @staticmethod
    def _first_failure(futures: Sequence[Future], dropped: Dict[int, str]) -> Optional[Future]:
        for i, f in enumerate(futures):
            if i not in dropped and f.done() and not f.cancelled() and f.exception() is not None:
                return f
        return None

    def _wait_each(self, futures: Sequence[Future], started: Dict[int, float], timeout: float) -> Dict[int, str]:
        """
        Waits until every classifier has finished, failed or used up its own
        `timeout`, counted from the moment its worker picked it up. Work still
        queued while no worker is making progress on this call gets one more
        `timeout` to start before it is given up too.

        Returns the dropped classifier indices with the reason.
        """
        dropped: Dict[int, str] = {}
        blocked_since: Dict[int, float] = {}
        pending = set(range(len(futures)))

        while True:
            still_running = {i for i in pending if not futures[i].done()}
            if self._first_failure(futures, dropped) is not None:
                return dropped
            if len(still_running) < len(pending):
                # a worker just freed up, queued work gets a fresh window
                blocked_since.clear()
            pending = still_running

            now = time.monotonic()
            for i in sorted(pending):
                if i in started and now - started[i] >= timeout:
                    dropped[i] = f"did not finish within {timeout:.2f}s"
            pending.difference_update(dropped)

            live = any(i in started for i in pending)
            for i in sorted(pending):
                if i in started or live:
                    blocked_since.pop(i, None)
                    continue
                since = blocked_since.setdefault(i, now)
                if now - since >= timeout:
                    dropped[i] = f"never started, workers stayed busy for {timeout:.2f}s"
            pending.difference_update(dropped)

            if not pending:
                return dropped

            deadlines = [started[i] + timeout for i in pending if i in started]
            deadlines += [blocked_since[i] + timeout for i in pending if i in blocked_since]
            wake = min(deadlines) - now if deadlines else timeout
            wait([futures[i] for i in pending], timeout=max(wake, 0.0), return_when=FIRST_COMPLETED)

    def _fan_out(self, image: np.ndarray, primaries: Sequence[ClassifierSpec]) -> List[DetectionSet]:
        pool = self._pool()
        timeout = self.params.classifier_timeout
        started: Dict[int, float] = {}
        futures = [pool.submit(self._timed_run, started, i, image, spec) for i, spec in enumerate(primaries)]

        dropped: Dict[int, str] = {}
        if timeout is None:
            wait(futures, return_when=FIRST_EXCEPTION)
        else:
            dropped = self._wait_each(futures, started, timeout)

        failed = self._first_failure(futures, dropped)
        if failed is not None:
            for f in futures:
                f.cancel()
            raise failed.exception()

        slots: List[DetectionSet] = []
        for i, (spec, future) in enumerate(zip(primaries, futures)):
            if i in dropped:
                future.cancel()
                LOGGER.warning("Classifier '%s' %s, dropping its detections", spec.name, dropped[i])
                continue
            slots.append(future.result())
        return slots

    def run(
        self,
        ctx: ImageContext,
        primaries: Sequence[ClassifierSpec],
        existing: Optional[DetectionSet] = None,
        image: Optional[np.ndarray] = None,
    ) -> DetectionSet:
        primaries = list(primaries)
        if not primaries and existing is None:
            return DetectionSet()

        slots: List[DetectionSet] = []
        if primaries:
            if image is None:
                image = self.preparer.read(ctx)
            slots = self._fan_out(image, primaries)
        if existing is not None:
            slots.append(existing)

        LOGGER.debug(
            "Fusion %s: %d slot(s), %d candidate(s)",
            ctx.name, len(slots), sum(len(ds) for ds in slots),
        )
        return merge_duplicates(slots, self.params.iou_thresh)
