class CascadeFusionError(Exception):
    """Base class for every error raised by the detection engine."""


class ConfigurationError(CascadeFusionError):
    """A classifier resource or configuration file cannot be loaded."""


class DetectionFailure(CascadeFusionError):
    """The feature detector failed while processing an image."""


class InputError(CascadeFusionError):
    """The image is missing, empty or cannot be decoded."""
