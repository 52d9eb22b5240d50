import os
import logging
from typing import Optional

from pydantic import ValidationError

from basemodels import DetectionSet, ImageContext
from errors import InputError

LOGGER = logging.getLogger("cascadefusion.metadata")

SIDECAR_SUFFIX = ".detections.json"


def sidecar_path(image_path: str) -> str:
    return image_path + SIDECAR_SUFFIX


def load_detections(image_path: str) -> Optional[DetectionSet]:
    """Detection set stored next to the image, or None if there is none."""
    path = sidecar_path(image_path)
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r") as f:
            ds = DetectionSet.model_validate_json(f.read())
    except (OSError, ValidationError) as exc:
        raise InputError(f"Could not read detections from {path}: {exc}") from exc
    LOGGER.debug("Loaded %d detection(s) from %s", len(ds), path)
    return ds


def save_detections(ctx: ImageContext) -> str:
    path = sidecar_path(ctx.path)
    ds = ctx.detections if ctx.detections is not None else DetectionSet()
    with open(path, "w") as f:
        f.write(ds.model_dump_json(indent=2))
    LOGGER.debug("Saved %d detection(s) to %s", len(ds), path)
    return path
