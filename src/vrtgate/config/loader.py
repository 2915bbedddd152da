"""Configuration loading and persistence utilities."""

import shutil
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from ..utils.logging import get_structured_logger
from .settings import AppSettings, SiteConfig
from .types import ConfigError, ConfigLoadError, ConfigValidationError

logger = get_structured_logger(__name__)


class ConfigLoader:
    """Loads and saves the YAML configuration file."""

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = Path(config_file) if config_file else Path("config.yaml")
        self._cache: Optional[dict[str, Any]] = None

    def load_yaml_config(self) -> dict[str, Any]:
        """Load configuration from YAML file."""
        if not self.config_file.exists():
            logger.warning("Config file not found, using defaults", path=str(self.config_file))
            return {}

        try:
            with open(self.config_file, encoding="utf-8") as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigLoadError(f"Failed to parse YAML config: {str(e)}") from e
        except OSError as e:
            raise ConfigLoadError(f"Failed to load config file: {str(e)}") from e

        if not isinstance(config, dict):
            raise ConfigLoadError(f"Config file {self.config_file} must contain a mapping")

        logger.debug("Loaded configuration", path=str(self.config_file))
        self._cache = config
        return config

    def save_yaml_config(self, config: dict[str, Any]) -> None:
        """Save configuration to YAML file."""
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.safe_dump(config, f, default_flow_style=False, indent=2, sort_keys=False)
        except OSError as e:
            raise ConfigError(f"Failed to save config file: {str(e)}") from e

        logger.info("Saved configuration", path=str(self.config_file))
        self._cache = config

    def load_settings(self, **overrides: Any) -> AppSettings:
        """Build AppSettings from the YAML file, environment and overrides.

        Values from the file are passed as init kwargs, so they win over
        environment variables; explicit overrides win over both.
        """
        data = dict(self.load_yaml_config())
        data.update(overrides)
        try:
            return AppSettings(**data)
        except ValidationError as e:
            raise ConfigValidationError(
                f"Invalid configuration in {self.config_file}: {str(e)}"
            ) from e

    def get_sites_config(self) -> list[SiteConfig]:
        """Get the configured sites, skipping entries that fail validation."""
        config = self.load_yaml_config()
        sites = []
        for site_data in config.get("sites", []) or []:
            try:
                sites.append(SiteConfig(**site_data))
            except (TypeError, ValidationError) as e:
                logger.error("Failed to parse site config", site=site_data, error=str(e))
        return sites

    def add_site(self, site: SiteConfig) -> None:
        """Add a new site to configuration."""
        config = self.load_yaml_config()
        config.setdefault("sites", [])

        for existing_site in config["sites"]:
            if existing_site.get("id") == site.id:
                raise ConfigError(f"Site {site.id} already exists in configuration")

        config["sites"].append(_site_to_dict(site))
        self.save_yaml_config(config)

    def remove_site(self, site_id: str) -> bool:
        """Remove a site from configuration."""
        config = self.load_yaml_config()
        if "sites" not in config:
            return False

        original_count = len(config["sites"])
        config["sites"] = [s for s in config["sites"] if s.get("id") != site_id]

        if len(config["sites"]) < original_count:
            self.save_yaml_config(config)
            return True
        return False

    def backup_config(self, backup_path: Optional[Path] = None) -> Path:
        """Create a backup of the current configuration."""
        if backup_path is None:
            backup_path = self.config_file.with_suffix(".backup" + self.config_file.suffix)

        if self.config_file.exists():
            shutil.copy2(self.config_file, backup_path)
            logger.info("Configuration backed up", path=str(backup_path))

        return backup_path

    def validate_config(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        try:
            config = self.load_yaml_config()
        except ConfigError as e:
            return [f"Failed to load config: {str(e)}"]

        seen_ids: set[str] = set()
        for i, site in enumerate(config.get("sites", []) or []):
            if not isinstance(site, dict):
                issues.append(f"Site {i} is not a valid object")
                continue

            for field in ("id", "start_url"):
                if field not in site:
                    issues.append(f"Site {i} missing required '{field}' field")

            site_id = site.get("id")
            if site_id in seen_ids:
                issues.append(f"Site {i} has duplicate id: {site_id}")
            seen_ids.add(site_id)

            try:
                SiteConfig(**site)
            except (TypeError, ValidationError) as e:
                issues.append(f"Site {i} is invalid: {_first_error(e)}")

        global_data = {k: v for k, v in config.items() if k != "sites"}
        try:
            AppSettings(**global_data)
        except ValidationError as e:
            issues.append(f"Invalid settings: {_first_error(e)}")

        return issues


def _site_to_dict(site: SiteConfig) -> dict[str, Any]:
    data = site.model_dump(exclude_none=True)
    data["exclude_patterns"] = list(site.exclude_patterns)
    return data


def _first_error(error: Exception) -> str:
    if isinstance(error, ValidationError) and error.errors():
        first = error.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        return f"{location}: {first.get('msg')}" if location else first.get("msg", "")
    return str(error)


def create_example_config(config_path: Path) -> None:
    """Create an example configuration file."""
    example_config = {
        "log_level": "INFO",
        "database": {"url": "sqlite:///./data/vrtgate.db"},
        "crawl": {"max_pages": 20, "max_depth": 3, "concurrency": 4},
        "capture": {
            "max_concurrency": 50,
            "session_pool_size": 5,
            "image_format": "png",
            "settle_ms": 500,
        },
        "diff": {"threshold": 2.0, "size_mismatch_policy": "pad", "pixel_backend": "numpy"},
        "retry": {"max_retries": 3, "base_delay": 1.0},
        "storage": {"artifacts_dir": "./data/artifacts", "retention_days": 90},
        "sites": [
            {
                "id": "example",
                "name": "Example Site",
                "start_url": "https://example.com",
                "max_pages": 20,
                "max_depth": 3,
                "exclude_patterns": [r"/cart(/|$)"],
                "enabled": True,
            }
        ],
    }

    loader = ConfigLoader(config_path)
    loader.save_yaml_config(example_config)
