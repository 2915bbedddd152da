"""Pydantic settings models for configuration management."""

import os
import re
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from .types import ConfigError, ImageFormat, PixelBackend, SizeMismatchPolicy

DEFAULT_EXCLUDE_PATTERNS = [
    r"\.(pdf|zip|exe|dmg|doc|docx|xls|xlsx|ppt|pptx|gz|tar|rar|7z)$",
    r"\.(png|jpe?g|gif|svg|ico|webp|bmp|mp3|mp4|webm|avi|mov)$",
    r"^mailto:",
    r"^tel:",
    r"^javascript:",
    r"/wp-admin",
    r"/wp-login",
    r"/admin(/|$)",
    r"/login(/|$)",
    r"\?.*logout",
    r"\?.*action=logout",
    r"\?.*preview",
]

BLOCKED_RESOURCE_TYPES = ["font", "media", "websocket", "manifest"]

BLOCKED_DOMAINS = [
    "google-analytics",
    "googletagmanager",
    "facebook",
    "doubleclick",
    "amazon-adsystem",
    "twitter",
    "linkedin",
]


class DatabaseSettings(BaseModel):
    """Database configuration settings."""

    url: str = "sqlite:///./data/vrtgate.db"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        if not v:
            raise ValueError("Database URL cannot be empty")
        return v


class CrawlSettings(BaseModel):
    """Page discovery configuration."""

    max_pages: int = 20
    max_depth: int = 3
    concurrency: int = 4
    navigation_timeout_ms: int = 30000
    respect_robots: bool = True
    user_agent: str = "Mozilla/5.0 (compatible; vrtgate/0.1)"
    exclude_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS)
    )

    @field_validator("max_pages", "concurrency")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("max_depth")
    @classmethod
    def validate_depth(cls, v):
        if v < 0:
            raise ValueError("Max depth cannot be negative")
        return v


class CaptureSettings(BaseModel):
    """Capture pool and render policy configuration."""

    max_concurrency: int = 50
    session_pool_size: int = 5
    cache_max_entries: int = 100
    cache_ttl_seconds: float = 300.0
    navigation_timeout_ms: int = 30000
    wait_selector: Optional[str] = None
    wait_timeout_ms: int = 2000
    settle_ms: int = 500
    full_page: bool = True
    image_format: ImageFormat = ImageFormat.PNG
    quality: int = 80
    block_resources: bool = True
    blocked_resource_types: list[str] = Field(
        default_factory=lambda: list(BLOCKED_RESOURCE_TYPES)
    )
    blocked_domains: list[str] = Field(default_factory=lambda: list(BLOCKED_DOMAINS))
    disable_animations: bool = True

    @field_validator("max_concurrency", "session_pool_size", "cache_max_entries")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("quality")
    @classmethod
    def validate_quality(cls, v):
        if v < 1 or v > 100:
            raise ValueError("Quality must be between 1 and 100")
        return v


class DiffSettings(BaseModel):
    """Diff engine thresholds and policies."""

    threshold: float = 2.0
    significant_threshold: float = 5.0
    pixel_threshold: float = 0.1
    include_antialiasing: bool = False
    pixel_backend: PixelBackend = PixelBackend.NUMPY
    prefilter_enabled: bool = True
    histogram_threshold: float = 0.001
    edge_density_threshold: float = 0.001
    edge_magnitude: float = 30.0
    min_region_area: int = 100
    layout_area: int = 10000
    content_area: int = 1000
    size_mismatch_policy: SizeMismatchPolicy = SizeMismatchPolicy.PAD
    pad_color: tuple[int, int, int] = (255, 255, 255)
    render_diff_images: bool = True
    max_concurrency: int = Field(default_factory=lambda: os.cpu_count() or 2)

    @field_validator("threshold", "significant_threshold")
    @classmethod
    def validate_percentage(cls, v):
        if v < 0.0 or v > 100.0:
            raise ValueError("Percentage thresholds must be between 0 and 100")
        return v

    @field_validator("pixel_threshold")
    @classmethod
    def validate_pixel_threshold(cls, v):
        if v < 0.0 or v > 1.0:
            raise ValueError("Pixel threshold must be between 0.0 and 1.0")
        return v

    @model_validator(mode="after")
    def validate_areas(self):
        if self.content_area >= self.layout_area:
            raise ValueError("content_area must be smaller than layout_area")
        return self


class RetrySettings(BaseModel):
    """Retry and backoff configuration."""

    max_retries: int = 3
    base_delay: float = 1.0

    @field_validator("max_retries")
    @classmethod
    def validate_retries(cls, v):
        if v < 1:
            raise ValueError("Max retries must be at least 1")
        return v

    @field_validator("base_delay")
    @classmethod
    def validate_delay(cls, v):
        if v < 0:
            raise ValueError("Base delay cannot be negative")
        return v


class StorageSettings(BaseModel):
    """Snapshot artifact and retention configuration."""

    artifacts_dir: str = "./data/artifacts"
    retention_days: int = 90

    @field_validator("retention_days")
    @classmethod
    def validate_retention(cls, v):
        if v <= 0:
            raise ValueError("Retention days must be positive")
        return v


class PipelineSettings(BaseModel):
    """Run orchestration options."""

    positional_fallback: bool = False


class SiteConfig(BaseModel):
    """A site under visual regression control. Immutable during a run."""

    model_config = ConfigDict(frozen=True)

    id: str
    start_url: str
    name: Optional[str] = None
    max_pages: int = 20
    max_depth: int = 3
    exclude_patterns: tuple[str, ...] = ()
    enabled: bool = True

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        if not re.fullmatch(r"[A-Za-z0-9_.-]+", v):
            raise ValueError("Site id may only contain letters, digits, '.', '_' and '-'")
        return v

    @field_validator("start_url")
    @classmethod
    def validate_start_url(cls, v):
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        if not urlparse(v).hostname:
            raise ValueError(f"Invalid start URL: {v}")
        return v

    @field_validator("exclude_patterns")
    @classmethod
    def validate_patterns(cls, v):
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid exclude pattern {pattern!r}: {e}") from e
        return v

    @property
    def domain(self) -> str:
        return urlparse(self.start_url).hostname or ""

    @property
    def display_name(self) -> str:
        return self.name or self.domain

    @classmethod
    def from_url(cls, url: str, max_pages: int = 20, max_depth: int = 3) -> "SiteConfig":
        """Build an ad hoc site for a bare URL."""
        normalized = url if url.startswith(("http://", "https://")) else f"https://{url}"
        host = urlparse(normalized).hostname or "site"
        site_id = re.sub(r"[^A-Za-z0-9_.-]", "-", host)
        return cls(id=site_id, start_url=normalized, max_pages=max_pages, max_depth=max_depth)


class AppSettings(BaseSettings):
    """Main application settings."""

    log_level: str = "INFO"
    json_logs: bool = False

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    crawl: CrawlSettings = Field(default_factory=CrawlSettings)
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    diff: DiffSettings = Field(default_factory=DiffSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    sites: list[SiteConfig] = Field(default_factory=list)

    class Config:
        env_prefix = "VRTGATE_"
        env_file = ".env"
        env_nested_delimiter = "__"
        case_sensitive = False
        extra = "ignore"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def validate_unique_sites(self):
        seen: set[str] = set()
        for site in self.sites:
            if site.id in seen:
                raise ValueError(f"Duplicate site id: {site.id}")
            seen.add(site.id)
        return self

    def get_site(self, site_id: str) -> Optional[SiteConfig]:
        """Look up a configured site by id."""
        for site in self.sites:
            if site.id == site_id:
                return site
        return None


def load_settings(**overrides) -> AppSettings:
    """Build settings from the environment plus explicit overrides."""
    try:
        return AppSettings(**overrides)
    except Exception as e:
        raise ConfigError(f"Failed to load settings: {str(e)}") from e


def ensure_data_dirs(settings: AppSettings) -> None:
    """Create the SQLite and artifact directories if they are missing."""
    paths = [settings.storage.artifacts_dir]
    if settings.database.url.startswith("sqlite") and ":memory:" not in settings.database.url:
        db_path = settings.database.url.split(":///", 1)[-1]
        paths.append(os.path.dirname(db_path))

    for path in paths:
        if path and not os.path.exists(path):
            try:
                os.makedirs(path, exist_ok=True)
            except OSError as e:
                raise ConfigError(f"Cannot create directory {path}: {str(e)}") from e
