from __future__ import annotations

import os
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from basemodels import ClassifierRole, ClassifierSpec, ImageContext, Rect
from errors import ConfigurationError, DetectionFailure, InputError

LOGGER = logging.getLogger("cascadefusion.image_inference")


# Image preparation #####################################
class ImagePreparer:
    """
    Reads images for detection and derives per-classifier working images.

    The working image may be downscaled; the returned scale factor maps
    original pixels to working pixels, so rectangles found on the working
    image are projected back with its inverse.
    """
    def __init__(self, enhance: bool = True):
        self.enhance = enhance

    def read(self, ctx: ImageContext) -> np.ndarray:
        if not ctx.path or not os.path.isfile(ctx.path):
            raise InputError(f"Image not found: {ctx.path!r}")
        img = cv2.imread(ctx.path, cv2.IMREAD_GRAYSCALE)
        if img is None or img.size == 0:
            raise InputError(f"Image could not be decoded: {ctx.path}")
        return img

    def load_for_detection(
        self,
        image: np.ndarray,
        spec: Optional[ClassifierSpec] = None,
    ) -> Tuple[np.ndarray, float]:
        h, w = image.shape[:2]
        scale = 1.0
        working = image

        limit = spec.max_image_size if spec is not None else None
        if limit and max(h, w) > limit:
            scale = limit / float(max(h, w))
            new_w = max(1, int(round(w * scale)))
            new_h = max(1, int(round(h * scale)))
            working = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)

        if self.enhance:
            working = cv2.equalizeHist(working)
        return working, scale

    def crop(self, image: np.ndarray, rect: Rect) -> np.ndarray:
        """Sub-image under rect, clipped to the image bounds (may be empty)."""
        h, w = image.shape[:2]
        x1, y1 = max(0, rect.left), max(0, rect.top)
        x2, y2 = min(w, rect.right), min(h, rect.bottom)
        if x2 <= x1 or y2 <= y1:
            return image[0:0, 0:0]
        return image[y1:y2, x1:x2]


# Feature detectors #####################################
class FeatureDetector(ABC):
    @abstractmethod
    def detect(
        self,
        spec: ClassifierSpec,
        image: np.ndarray,
        scale_factor: float,
        min_neighbors: int,
    ) -> List[Rect]:
        """Rectangles found in `image`, in that image's pixel space."""


class CascadeEngine(FeatureDetector):
    """
    OpenCV cascade runner with a loaded-classifier cache.

    Cascade instances are not shared between threads, so the cache is kept
    per thread and keyed by absolute resource path. An entry is reloaded
    only when the file's modification time changes.
    """
    def __init__(self):
        self._local = threading.local()
        self._lock = threading.Lock()
        self.load_count = 0

    def _cache(self) -> Dict[str, Tuple[float, cv2.CascadeClassifier]]:
        cache = getattr(self._local, "cache", None)
        if cache is None:
            cache = {}
            self._local.cache = cache
        return cache

    def load(self, spec: ClassifierSpec) -> cv2.CascadeClassifier:
        path = os.path.abspath(spec.path)
        try:
            mtime = os.path.getmtime(path)
        except OSError as exc:
            raise ConfigurationError(f"Classifier '{spec.name}' not found at {path}") from exc

        cache = self._cache()
        hit = cache.get(path)
        if hit is not None and hit[0] == mtime:
            return hit[1]

        factory = getattr(cv2, "CascadeClassifier", None)
        if factory is None:
            raise ConfigurationError(
                f"Classifier '{spec.name}' needs cv2.CascadeClassifier, which OpenCV {cv2.__version__} does not provide"
            )

        LOGGER.info("Loading classifier %s (%s)", spec.name, path)
        try:
            classifier = factory(path)
        except cv2.error as exc:
            raise ConfigurationError(f"Classifier '{spec.name}' could not be parsed: {exc}") from exc
        if classifier.empty():
            raise ConfigurationError(f"Classifier '{spec.name}' could not be loaded from {path}")

        cache[path] = (mtime, classifier)
        with self._lock:
            self.load_count += 1
        return classifier

    def detect(
        self,
        spec: ClassifierSpec,
        image: np.ndarray,
        scale_factor: float,
        min_neighbors: int,
    ) -> List[Rect]:
        classifier = self.load(spec)

        kwargs = {}
        if spec.min_size:
            kwargs["minSize"] = tuple(int(v) for v in spec.min_size)
        if spec.max_size:
            kwargs["maxSize"] = tuple(int(v) for v in spec.max_size)
        if spec.role is ClassifierRole.PRIMARY:
            kwargs["flags"] = cv2.CASCADE_DO_CANNY_PRUNING

        try:
            found = classifier.detectMultiScale(
                image,
                scaleFactor=float(scale_factor),
                minNeighbors=int(min_neighbors),
                **kwargs,
            )
        except cv2.error as exc:
            raise DetectionFailure(f"Classifier '{spec.name}' failed: {exc}") from exc

        return [Rect(x=int(x), y=int(y), width=int(w), height=int(h)) for (x, y, w, h) in found]
