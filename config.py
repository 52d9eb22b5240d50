import os
import logging
from typing import Any, Dict, List, Optional

import cv2
import yaml
from pydantic import ValidationError

from basemodels import (
    DEFAULT_ACCEPTANCE_THRESHOLD,
    AppConfig,
    ClassifierSet,
    ClassifierSpec,
    FusionParams,
)
from errors import ConfigurationError

LOGGER = logging.getLogger("cascadefusion.config")

# Defaults / env overrides ################################################
DEFAULT_CONFIG_PATH = os.environ.get("CASCADEFUSION_CONFIG", "./classifiers.yaml")


# Config helpers ##########################################################
def load_config_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        raise ConfigurationError(f"Config not found: {path}")
    try:
        with open(path, "r") as f:
            cfg = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Config {path} is not valid YAML: {exc}") from exc
    if cfg is None:
        return {}
    if not isinstance(cfg, dict):
        raise ConfigurationError(f"Config {path} must be a mapping, got {type(cfg).__name__}")
    return cfg


def _as_float(x, default: float) -> float:
    try:
        return float(x)
    except Exception:
        return float(default)


def _as_bool(x, default: bool) -> bool:
    if isinstance(x, bool):
        return x
    if isinstance(x, str):
        return x.strip().lower() in ("1", "true", "yes", "y", "on")
    return default


def resolve_classifier_path(path: str, base_dir: str) -> str:
    """
    Absolute paths are used as they are. Relative paths are tried against the
    config's directory, then against OpenCV's bundled cascades.
    """
    expanded = os.path.expanduser(path)
    if os.path.isabs(expanded):
        return expanded

    candidate = os.path.abspath(os.path.join(base_dir, expanded))
    if os.path.exists(candidate):
        return candidate

    bundled = getattr(getattr(cv2, "data", None), "haarcascades", None)
    if bundled:
        packaged = os.path.join(bundled, expanded)
        if os.path.exists(packaged):
            return packaged

    # left for the engine to report when it tries to load it
    return candidate


# Parsing #################################################################
def parse_fusion_params(section: Optional[Dict[str, Any]]) -> FusionParams:
    section = section or {}
    try:
        return FusionParams(
            acceptance_threshold=_as_float(section.get("acceptance_threshold"), DEFAULT_ACCEPTANCE_THRESHOLD),
            iou_thresh=_as_float(section.get("iou_thresh"), 0.0),
            use_verification=_as_bool(section.get("use_verification"), True),
            enhance=_as_bool(section.get("enhance"), True),
            max_workers=section.get("max_workers"),
            classifier_timeout=section.get("classifier_timeout"),
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid fusion parameters: {exc}") from exc


def parse_classifiers(entries: Optional[List[Any]], base_dir: str) -> ClassifierSet:
    if entries is None:
        return ClassifierSet()
    if not isinstance(entries, list):
        raise ConfigurationError("'classifiers' must be a list")

    specs: List[ClassifierSpec] = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Classifier #{i} must be a mapping")
        if not str(entry.get("path") or "").strip():
            raise ConfigurationError(f"Classifier #{i} missing 'path'")

        data = dict(entry)
        if not _as_bool(data.pop("enabled", True), True):
            LOGGER.debug("Classifier #%d (%s) disabled in config", i, entry["path"])
            continue
        data["path"] = resolve_classifier_path(str(entry["path"]).strip(), base_dir)

        try:
            specs.append(ClassifierSpec(**data))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid classifier #{i} ({entry['path']}): {exc}") from exc

    return ClassifierSet.of(specs)


def load_app_config(path: str = DEFAULT_CONFIG_PATH) -> AppConfig:
    cfg = load_config_yaml(path)
    base_dir = os.path.dirname(os.path.abspath(path))

    classifiers = parse_classifiers(cfg.get("classifiers"), base_dir)
    fusion = parse_fusion_params(cfg.get("fusion"))
    LOGGER.debug(
        "Loaded %d primary and %d verifier classifier(s) from %s",
        len(classifiers.primaries), len(classifiers.verifiers), path,
    )
    return AppConfig(classifiers=classifiers, fusion=fusion)


def load_classifier_set(path: str = DEFAULT_CONFIG_PATH) -> ClassifierSet:
    return load_app_config(path).classifiers


def save_classifier_set(
    classifiers: ClassifierSet,
    path: str,
    fusion: Optional[FusionParams] = None,
) -> None:
    cfg: Dict[str, Any] = {
        "classifiers": [spec.model_dump(mode="json", exclude_none=True) for spec in classifiers.specs],
    }
    if fusion is not None:
        cfg["fusion"] = fusion.model_dump(mode="json")
    with open(path, "w") as f:
        yaml.safe_dump(cfg, f, sort_keys=False)
    LOGGER.debug("Saved %d classifier(s) to %s", len(classifiers), path)
