import logging
import math
import os
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

LOGGER = logging.getLogger("cascadefusion.basemodels")

DEFAULT_SCALE_FACTOR = 1.08
DEFAULT_MIN_NEIGHBORS = 4
DEFAULT_EXPECTED_COUNT = 2
DEFAULT_ACCEPTANCE_THRESHOLD = 0.96
MANUAL_SOURCE = "manual"


# Geometry #####################################
class Rect(BaseModel):
    """Axis-aligned rectangle, (x, y) is the top-left corner."""
    model_config = ConfigDict(frozen=True)

    x: int
    y: int
    width: int = Field(ge=0)
    height: int = Field(ge=0)

    @property
    def left(self) -> int:
        return self.x

    @property
    def top(self) -> int:
        return self.y

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def xyxy(self) -> List[int]:
        return [self.left, self.top, self.right, self.bottom]

    @classmethod
    def from_xyxy(cls, x1: float, y1: float, x2: float, y2: float) -> "Rect":
        x1, x2 = sorted((x1, x2))
        y1, y2 = sorted((y1, y2))
        left, top = int(round(x1)), int(round(y1))
        return cls(x=left, y=top, width=int(round(x2)) - left, height=int(round(y2)) - top)

    def intersection_area(self, other: "Rect") -> int:
        w = min(self.right, other.right) - max(self.left, other.left)
        h = min(self.bottom, other.bottom) - max(self.top, other.top)
        if w <= 0 or h <= 0:
            return 0
        return w * h

    def union(self, other: "Rect") -> "Rect":
        """Bounding box of both rectangles."""
        return Rect.from_xyxy(
            min(self.left, other.left),
            min(self.top, other.top),
            max(self.right, other.right),
            max(self.bottom, other.bottom),
        )

    def scaled(self, factor: float) -> "Rect":
        return Rect.from_xyxy(
            self.left * factor,
            self.top * factor,
            self.right * factor,
            self.bottom * factor,
        )


# Detections #####################################
class Detection(BaseModel):
    model_config = ConfigDict(frozen=True)

    rect: Rect                       # original image pixel space
    confidence: float = Field(ge=0.0, le=1.0)
    label: Optional[str] = None      # identity, only ever set by manual annotation
    source: str = ""                 # classifier name or "manual"

    @classmethod
    def manual(cls, rect: Rect, label: Optional[str] = None, confidence: float = 1.0) -> "Detection":
        return cls(rect=rect, confidence=confidence, label=label, source=MANUAL_SOURCE)


class DetectionSet(BaseModel):
    detections: List[Detection] = Field(default_factory=list)

    @classmethod
    def from_rects(cls, rects: Iterable[Rect], confidence: float, source: str = "") -> "DetectionSet":
        return cls(detections=[Detection(rect=r, confidence=confidence, source=source) for r in rects])

    def __len__(self) -> int:
        return len(self.detections)

    @property
    def labels(self) -> List[str]:
        return [d.label for d in self.detections if d.label]


class ImageContext(BaseModel):
    path: str
    width: int = 0
    height: int = 0
    display_scale: float = Field(default=1.0, gt=0.0)   # display collaborator only
    detections: Optional[DetectionSet] = None

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    def attach(self, detection_set: DetectionSet) -> None:
        self.detections = detection_set

    def add_detection(self, detection: Detection) -> None:
        # attached sets are never mutated in place
        existing = self.detections.detections if self.detections is not None else []
        self.detections = DetectionSet(detections=list(existing) + [detection])

    def clear_detections(self) -> None:
        self.detections = None


# Classifiers #####################################
class ClassifierRole(str, Enum):
    PRIMARY = "primary"
    VERIFIER = "verifier"


class ClassifierSpec(BaseModel):
    """
    Describes one cascade resource and the parameters it is run with.

    `confidence` is the static trust weight given to every hit of a primary
    classifier. `expected_count` is the exact number of sub-features a
    verifier must report to confirm a detection.
    """
    model_config = ConfigDict(frozen=True)

    path: str
    name: str = Field(default="", validate_default=True)
    role: ClassifierRole = ClassifierRole.PRIMARY
    scale_factor: float = DEFAULT_SCALE_FACTOR
    min_neighbors: int = DEFAULT_MIN_NEIGHBORS
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    expected_count: int = Field(default=DEFAULT_EXPECTED_COUNT, ge=1)
    max_image_size: Optional[int] = Field(default=None, gt=0)   # working resolution hint (longest side)
    min_size: Optional[Tuple[int, int]] = None
    max_size: Optional[Tuple[int, int]] = None

    @field_validator("name")
    @classmethod
    def _default_name(cls, v: str, info: ValidationInfo) -> str:
        if v:
            return v
        path = info.data.get("path") or ""
        return os.path.splitext(os.path.basename(path))[0]

    @field_validator("scale_factor", mode="before")
    @classmethod
    def _reset_scale_factor(cls, v):
        # detectMultiScale needs a pyramid step strictly above 1
        try:
            value = float(v)
        except (TypeError, ValueError):
            value = 0.0
        if not math.isfinite(value) or value <= 1.0:
            LOGGER.debug("scale_factor=%r out of range, using %.2f", v, DEFAULT_SCALE_FACTOR)
            return DEFAULT_SCALE_FACTOR
        return value

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("min_neighbors", mode="before")
    @classmethod
    def _reset_min_neighbors(cls, v):
        try:
            value = int(v)
        except (TypeError, ValueError):
            value = 0
        if value < 1:
            LOGGER.debug("min_neighbors=%r out of range, using %d", v, DEFAULT_MIN_NEIGHBORS)
            return DEFAULT_MIN_NEIGHBORS
        return value


class ClassifierSet(BaseModel):
    """Immutable snapshot of the classifiers a detection call runs with."""
    model_config = ConfigDict(frozen=True)

    primaries: Tuple[ClassifierSpec, ...] = ()
    verifiers: Tuple[ClassifierSpec, ...] = ()

    @model_validator(mode="after")
    def _check_roles(self) -> "ClassifierSet":
        for spec in self.primaries:
            if spec.role is not ClassifierRole.PRIMARY:
                raise ValueError(f"Classifier '{spec.name}' is not a primary classifier")
        for spec in self.verifiers:
            if spec.role is not ClassifierRole.VERIFIER:
                raise ValueError(f"Classifier '{spec.name}' is not a verifier classifier")
        return self

    @classmethod
    def of(cls, specs: Iterable[ClassifierSpec]) -> "ClassifierSet":
        out = cls()
        for spec in specs:
            out = out.with_classifier(spec)
        return out

    def with_classifier(self, spec: ClassifierSpec) -> "ClassifierSet":
        if spec.role is ClassifierRole.VERIFIER:
            return ClassifierSet(primaries=self.primaries, verifiers=self.verifiers + (spec,))
        return ClassifierSet(primaries=self.primaries + (spec,), verifiers=self.verifiers)

    @property
    def specs(self) -> List[ClassifierSpec]:
        return list(self.primaries) + list(self.verifiers)

    def __len__(self) -> int:
        return len(self.primaries) + len(self.verifiers)


# Runtime config #####################################
class FusionParams(BaseModel):
    acceptance_threshold: float = Field(default=DEFAULT_ACCEPTANCE_THRESHOLD, ge=0.0, le=1.0)
    iou_thresh: float = Field(default=0.0, ge=0.0, lt=1.0)   # conflict when IoU > iou_thresh
    use_verification: bool = True
    enhance: bool = True                                     # equalize working images
    max_workers: Optional[int] = Field(default=None, gt=0)
    classifier_timeout: Optional[float] = Field(default=None, gt=0.0)  # seconds, None waits forever


class AppConfig(BaseModel):
    classifiers: ClassifierSet = Field(default_factory=ClassifierSet)
    fusion: FusionParams = Field(default_factory=FusionParams)
