import logging
from typing import Tuple

import cv2
import numpy as np

from basemodels import DetectionSet

LOGGER = logging.getLogger("cascadefusion.overlay")

AUTO_COLOR = (255, 128, 0)      # BGR
LABELED_COLOR = (0, 128, 255)
SUMMARY_COLOR = (0, 255, 255)


def find_scale(width: int, height: int, max_width: int, max_height: int) -> float:
    """Largest factor <= 1 that fits (width, height) into the display box."""
    if width <= 0 or height <= 0 or max_width <= 0 or max_height <= 0:
        return 1.0
    return min(1.0, max_width / float(width), max_height / float(height))


def _scaled_xyxy(xyxy, scale: float) -> Tuple[int, int, int, int]:
    x1, y1, x2, y2 = (int(round(v * scale)) for v in xyxy)
    return x1, y1, x2, y2


def draw_detections(image: np.ndarray, detection_set: DetectionSet, scale: float = 1.0) -> np.ndarray:
    if scale != 1.0:
        h, w = image.shape[:2]
        img = cv2.resize(image, (max(1, int(round(w * scale))), max(1, int(round(h * scale)))),
                         interpolation=cv2.INTER_AREA)
    else:
        img = image.copy()
    if img.ndim == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    h, w = img.shape[:2]

    for det in detection_set.detections:
        x1, y1, x2, y2 = _scaled_xyxy(det.rect.xyxy, scale)
        x1, y1 = max(0, x1), max(0, y1)
        x2, y2 = min(w-1, x2), min(h-1, y2)
        color = LABELED_COLOR if det.label else AUTO_COLOR
        text = det.label if det.label else f"{det.confidence:.2f}"
        cv2.rectangle(img, (x1, y1), (x2, y2), color, 2)
        cv2.putText(img, text, (x1, max(0, y1-10)),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, color, 2)

    return img


def overlay_summary(img: np.ndarray, detection_set: DetectionSet, color=SUMMARY_COLOR) -> np.ndarray:
    """Writes the detection count (and any identity labels) in the top-left corner, in place."""
    text = f"{len(detection_set)} detection(s)"
    if detection_set.labels:
        text += ": " + ", ".join(detection_set.labels)
    cv2.putText(img, text, (10, 24), cv2.FONT_HERSHEY_DUPLEX, 0.7, color, 2)
    return img
