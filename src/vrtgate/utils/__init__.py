"""Shared utilities for vrtgate."""

from .async_utils import AsyncContextManager
from .logging import (
    bind_run_context,
    clear_run_context,
    get_logger,
    get_structured_logger,
    setup_logging,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "get_structured_logger",
    "bind_run_context",
    "clear_run_context",
    "AsyncContextManager",
]
