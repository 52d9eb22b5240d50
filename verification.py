import logging
from typing import List, Optional, Sequence

import numpy as np

from basemodels import DEFAULT_ACCEPTANCE_THRESHOLD, ClassifierSpec, Detection, DetectionSet, ImageContext
from fusion import det_str
from image_inference import FeatureDetector, ImagePreparer

LOGGER = logging.getLogger("cascadefusion.verification")


class VerificationPass:
    """
    Confidence-gated secondary check.

    Detections at or above `acceptance_threshold` are kept as they are. Every
    other detection must be confirmed by a verifier that finds exactly
    `expected_count` sub-features inside the detection's rectangle (e.g. two
    eyes inside a face); zero or too many both read as a false positive.
    """
    def __init__(
        self,
        engine: FeatureDetector,
        preparer: Optional[ImagePreparer] = None,
        acceptance_threshold: float = DEFAULT_ACCEPTANCE_THRESHOLD,
    ):
        self.engine = engine
        self.preparer = preparer or ImagePreparer()
        self.acceptance_threshold = float(acceptance_threshold)

    def confirm(self, image: np.ndarray, det: Detection, verifiers: Sequence[ClassifierSpec]) -> bool:
        region = self.preparer.crop(image, det.rect)
        if region.size == 0:
            LOGGER.debug("[NO REGION] %s lies outside the image", det_str(det))
            return False

        for spec in verifiers:
            found = self.engine.detect(spec, region, spec.scale_factor, spec.min_neighbors)
            if len(found) == spec.expected_count:
                LOGGER.debug("[CONFIRMED] %s by %s (%d)", det_str(det), spec.name, len(found))
                return True
            LOGGER.debug("[%s] found %d, expected %d", spec.name, len(found), spec.expected_count)
        return False

    def run(
        self,
        ctx: ImageContext,
        detection_set: DetectionSet,
        verifiers: Sequence[ClassifierSpec],
        image: Optional[np.ndarray] = None,
    ) -> DetectionSet:
        verifiers = list(verifiers)
        if not verifiers:
            return detection_set

        base: Optional[np.ndarray] = None
        kept: List[Detection] = []
        for det in detection_set.detections:
            if det.confidence >= self.acceptance_threshold:
                kept.append(det)
                continue

            if base is None:
                if image is None:
                    image = self.preparer.read(ctx)
                base, _ = self.preparer.load_for_detection(image)

            if self.confirm(base, det, verifiers):
                kept.append(det)
            else:
                LOGGER.debug("[REJECT] %s", det_str(det))

        LOGGER.debug("Verification %s: %d -> %d", ctx.name, len(detection_set), len(kept))
        return DetectionSet(detections=kept)
