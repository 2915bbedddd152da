"""Type definitions for configuration system."""

from enum import Enum


class ConfigError(Exception):
    """Base exception for configuration-related errors."""

    pass


class ConfigValidationError(ConfigError):
    """Exception raised when configuration validation fails."""

    pass


class ConfigLoadError(ConfigError):
    """Exception raised when configuration loading fails."""

    pass


class SizeMismatchPolicy(str, Enum):
    """How the diff engine treats baseline/after images of different size."""

    PAD = "pad"
    CLIP = "clip"
    REJECT = "reject"


class PixelBackend(str, Enum):
    """Implementation behind the exact pixel diff."""

    NUMPY = "numpy"
    PIXELMATCH = "pixelmatch"


class ImageFormat(str, Enum):
    """Encoding used for stored snapshots."""

    PNG = "png"
    JPEG = "jpeg"
    WEBP = "webp"


DEVICE_VIEWPORTS: dict[str, dict[str, int]] = {
    "desktop": {"width": 1920, "height": 1080},
    "mobile": {"width": 375, "height": 667},
}
