"""Type definitions for the CLI module."""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..config import AppSettings, ConfigLoader


class CommandResult:
    """Result of a CLI command execution."""

    def __init__(
        self,
        success: bool,
        message: str = "",
        data: Optional[dict[str, Any]] = None,
        exit_code: int = 0,
    ):
        self.success = success
        self.message = message
        self.data = data or {}
        self.exit_code = exit_code
        self.timestamp = datetime.utcnow()

    def __bool__(self) -> bool:
        return self.success


class CLIContext:
    """Context object for CLI commands.

    Settings are loaded on first access so that ``init`` works before a
    configuration file exists.
    """

    def __init__(
        self,
        verbose: bool = False,
        debug: bool = False,
        config_path: Optional[str] = None,
    ):
        self.verbose = verbose
        self.debug = debug
        self.config_path = Path(config_path) if config_path else Path("config.yaml")
        self._settings: Optional[AppSettings] = None

    @property
    def loader(self) -> ConfigLoader:
        return ConfigLoader(self.config_path)

    @property
    def settings(self) -> AppSettings:
        if self._settings is None:
            self._settings = self.loader.load_settings()
        return self._settings


class OutputFormat(str, Enum):
    """Output format options for CLI commands."""

    TABLE = "table"
    JSON = "json"
