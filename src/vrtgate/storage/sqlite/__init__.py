"""SQLite database storage module."""

from .database import DatabaseManager, to_async_url
from .models import (
    Base,
    ComparisonRecord,
    CrawledPageRecord,
    ErrorRecordRow,
    RunSession,
    SnapshotRecord,
)

__all__ = [
    # Database management
    "DatabaseManager",
    "to_async_url",
    # Models
    "Base",
    "RunSession",
    "CrawledPageRecord",
    "SnapshotRecord",
    "ComparisonRecord",
    "ErrorRecordRow",
]
