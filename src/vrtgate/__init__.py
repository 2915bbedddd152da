"""vrtgate - crawl a site, capture every page and gate visual changes."""

__version__ = "0.1.0"

from .config import AppSettings, SiteConfig, load_settings
from .main import main_cli
from .pipeline import RunMode, RunReport, RunRequest, VRTRunner, create_runner

main = main_cli

__all__ = [
    "main_cli",
    "main",
    "AppSettings",
    "SiteConfig",
    "load_settings",
    "RunMode",
    "RunRequest",
    "RunReport",
    "VRTRunner",
    "create_runner",
    "__version__",
]
