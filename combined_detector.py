import logging
import threading
from typing import Optional

from basemodels import ClassifierSet, ClassifierSpec, DetectionSet, FusionParams, ImageContext
from config import load_app_config
from fusion import DetectionFusion
from image_inference import CascadeEngine, FeatureDetector, ImagePreparer
from verification import VerificationPass

LOGGER = logging.getLogger("cascadefusion.combined_detector")


class CombinedDetector:
    """
    Runs every primary classifier on an image, merges their hits with any
    detections already attached to it, optionally filters low-confidence
    results through the verifiers and attaches the final set.

    A call either attaches a complete new set or raises and leaves the
    image's detections as they were.
    """
    def __init__(
        self,
        classifiers: Optional[ClassifierSet] = None,
        params: Optional[FusionParams] = None,
        engine: Optional[FeatureDetector] = None,
        preparer: Optional[ImagePreparer] = None,
    ):
        self._lock = threading.Lock()
        self._classifiers = classifiers or ClassifierSet()
        self.params = params or FusionParams()
        self.engine = engine or CascadeEngine()
        self.preparer = preparer or ImagePreparer(enhance=self.params.enhance)

        self.fusion = DetectionFusion(self.engine, self.preparer, self.params)
        self.verification = VerificationPass(self.engine, self.preparer, self.params.acceptance_threshold)

    @classmethod
    def from_config(cls, path: str, **kwargs) -> "CombinedDetector":
        cfg = load_app_config(path)
        return cls(classifiers=cfg.classifiers, params=cfg.fusion, **kwargs)

    # Classifier set ############################################
    @property
    def classifiers(self) -> ClassifierSet:
        with self._lock:
            return self._classifiers

    def add_classifier(self, spec: ClassifierSpec) -> None:
        with self._lock:
            self._classifiers = self._classifiers.with_classifier(spec)
        LOGGER.debug("Added %s classifier %s", spec.role.value, spec.name)

    def set_classifiers(self, classifiers: ClassifierSet) -> None:
        with self._lock:
            self._classifiers = classifiers

    @property
    def use_verification(self) -> bool:
        return self.params.use_verification

    @use_verification.setter
    def use_verification(self, enabled: bool) -> None:
        self.params = self.params.model_copy(update={"use_verification": bool(enabled)})

    # Detection ##################################################
    def detect(self, ctx: ImageContext) -> int:
        classifiers = self.classifiers
        use_verification = self.params.use_verification

        image = self.preparer.read(ctx)

        merged = self.fusion.run(ctx, classifiers.primaries, existing=ctx.detections, image=image)
        if use_verification and classifiers.verifiers:
            merged = self.verification.run(ctx, merged, classifiers.verifiers, image=image)

        ctx.height, ctx.width = image.shape[:2]
        ctx.attach(DetectionSet(detections=list(merged.detections)))
        LOGGER.info("%s: %d detection(s)", ctx.name, len(merged))
        return len(merged)

    def close(self) -> None:
        self.fusion.close()

    def __enter__(self) -> "CombinedDetector":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
