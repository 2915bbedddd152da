"""Structured logging setup using structlog."""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.types import FilteringBoundLogger


def setup_logging(
    log_level: str = "INFO", json_logs: bool = False, include_caller_info: bool = False
) -> None:
    """Configure structured logging with appropriate processors."""

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper()),
    )

    # Build processor chain
    processors = [
        # Add run context (site, mode, device)
        structlog.contextvars.merge_contextvars,
        # Add log level
        structlog.processors.add_log_level,
        # Add logger name (safe for PrintLogger)
        _safe_add_logger_name,
        # Add timestamp
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    # Add caller info if requested
    if include_caller_info:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[
                    structlog.processors.CallsiteParameter.FILENAME,
                    structlog.processors.CallsiteParameter.FUNC_NAME,
                    structlog.processors.CallsiteParameter.LINENO,
                ]
            )
        )

    # Add stack info and exception formatting
    processors.extend(
        [
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
        ]
    )

    # Choose final renderer based on format preference
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    # Configure structlog to write to stderr
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def _safe_add_logger_name(logger, method_name: str, event_dict):
    """Add the logger name, falling back to the bound name for print loggers."""
    if "logger" in event_dict:
        return event_dict
    # PrintLogger has no name; fall back to the package name
    name = getattr(logger, "name", None)
    event_dict["logger"] = name or "vrtgate"
    return event_dict


def get_logger(name: str) -> FilteringBoundLogger:
    """Get a configured structlog logger."""
    return structlog.get_logger(name)


class StructuredLogger:
    """Wrapper for structured logging with convenience methods."""

    def __init__(self, name: str):
        self.logger = get_logger(name)
        self.name = name

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, logger=self.name, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, logger=self.name, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, logger=self.name, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.logger.error(message, logger=self.name, **kwargs)

    def critical(self, message: str, **kwargs: Any) -> None:
        self.logger.critical(message, logger=self.name, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log exception with traceback."""
        self.logger.exception(message, logger=self.name, **kwargs)

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Create a new logger with bound context."""
        bound_logger = StructuredLogger(self.name)
        bound_logger.logger = self.logger.bind(**kwargs)
        return bound_logger


def get_structured_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)


def bind_run_context(**context: Any) -> None:
    """Bind run-scoped values (site, mode, device) to every log line."""
    structlog.contextvars.bind_contextvars(**context)


def clear_run_context(keys: Optional[list[str]] = None) -> None:
    """Clear run-scoped logging context."""
    if keys:
        structlog.contextvars.unbind_contextvars(*keys)
    else:
        structlog.contextvars.clear_contextvars()
