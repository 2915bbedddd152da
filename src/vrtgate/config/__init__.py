"""Configuration management for the visual regression gate."""

from .loader import ConfigLoader, create_example_config
from .settings import (
    AppSettings,
    CaptureSettings,
    CrawlSettings,
    DatabaseSettings,
    DiffSettings,
    PipelineSettings,
    RetrySettings,
    SiteConfig,
    StorageSettings,
    ensure_data_dirs,
    load_settings,
)
from .types import (
    DEVICE_VIEWPORTS,
    ConfigError,
    ConfigLoadError,
    ConfigValidationError,
    ImageFormat,
    PixelBackend,
    SizeMismatchPolicy,
)

__all__ = [
    "AppSettings",
    "DatabaseSettings",
    "CrawlSettings",
    "CaptureSettings",
    "DiffSettings",
    "RetrySettings",
    "StorageSettings",
    "PipelineSettings",
    "SiteConfig",
    "load_settings",
    "ensure_data_dirs",
    "ConfigLoader",
    "create_example_config",
    "ConfigError",
    "ConfigLoadError",
    "ConfigValidationError",
    "ImageFormat",
    "PixelBackend",
    "SizeMismatchPolicy",
    "DEVICE_VIEWPORTS",
]
