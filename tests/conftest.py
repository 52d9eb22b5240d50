"""
Shared fixtures: a scriptable feature detector and synthetic images on disk.
"""
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple, Union

import cv2
import numpy as np
import pytest

from basemodels import ClassifierRole, ClassifierSpec, Rect
from image_inference import FeatureDetector

Hits = Union[List[Rect], Callable[[np.ndarray], List[Rect]]]


class FakeDetector(FeatureDetector):
    """
    Returns canned rectangles per classifier name. `errors` entries are raised
    and `delays` entries are slept before answering.
    """
    def __init__(
        self,
        hits: Optional[Dict[str, Hits]] = None,
        errors: Optional[Dict[str, Exception]] = None,
        delays: Optional[Dict[str, float]] = None,
    ):
        self.hits = hits or {}
        self.errors = errors or {}
        self.delays = delays or {}
        self.calls: List[Tuple[str, Tuple[int, ...]]] = []
        self._lock = threading.Lock()

    def detect(self, spec, image, scale_factor, min_neighbors):
        with self._lock:
            self.calls.append((spec.name, tuple(image.shape)))
        if spec.name in self.delays:
            time.sleep(self.delays[spec.name])
        if spec.name in self.errors:
            raise self.errors[spec.name]
        found = self.hits.get(spec.name, [])
        if callable(found):
            found = found(image)
        return list(found)

    def called(self, name: str) -> int:
        return sum(1 for n, _ in self.calls if n == name)


def primary(name: str, confidence: float = 0.5, **kwargs) -> ClassifierSpec:
    return ClassifierSpec(path=f"{name}.xml", name=name, confidence=confidence, **kwargs)


def verifier(name: str, expected_count: int = 2, **kwargs) -> ClassifierSpec:
    return ClassifierSpec(
        path=f"{name}.xml", name=name, role=ClassifierRole.VERIFIER,
        expected_count=expected_count, **kwargs,
    )


@pytest.fixture
def gray_image() -> np.ndarray:
    """300x400 (h x w) noise image."""
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, size=(300, 400), dtype=np.uint8)


@pytest.fixture
def image_path(tmp_path, gray_image) -> str:
    path = tmp_path / "scene.png"
    assert cv2.imwrite(str(path), gray_image)
    return str(path)


@pytest.fixture
def broken_image_path(tmp_path) -> str:
    path = tmp_path / "broken.png"
    path.write_bytes(b"this is not an image")
    return str(path)
