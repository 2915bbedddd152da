"""Durable storage for run sessions and snapshot artifacts."""

from .artifacts import ArtifactStore, LocalArtifactStore, artifact_key, diff_key
from .interface import SessionStore
from .sqlite import (
    Base,
    ComparisonRecord,
    CrawledPageRecord,
    DatabaseManager,
    ErrorRecordRow,
    RunSession,
    SnapshotRecord,
)
from .types import (
    ArtifactNotFoundError,
    ComparisonStats,
    SessionStatus,
    SessionType,
    StorageError,
)

__all__ = [
    "SessionStore",
    "DatabaseManager",
    "ArtifactStore",
    "LocalArtifactStore",
    "artifact_key",
    "diff_key",
    "Base",
    "RunSession",
    "CrawledPageRecord",
    "SnapshotRecord",
    "ComparisonRecord",
    "ErrorRecordRow",
    "ComparisonStats",
    "SessionStatus",
    "SessionType",
    "StorageError",
    "ArtifactNotFoundError",
]
