"""Type definitions for storage components."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class StorageError(Exception):
    """Base exception for storage-related errors."""

    pass


class ArtifactNotFoundError(StorageError):
    pass


class SessionType(str, Enum):
    """Kind of work a run session recorded."""

    CRAWL = "crawl"
    BASELINE = "baseline"
    AFTER = "after"
    COMPARE = "compare"


class SessionStatus(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class ComparisonStats:
    """Aggregate comparison outcomes for a site over a time window."""

    site_id: Optional[str]
    days: int
    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    average_diff_percentage: Optional[float] = None
    sessions: int = 0

    def to_dict(self) -> dict:
        return {
            "site_id": self.site_id,
            "days": self.days,
            "total": self.total,
            "by_status": dict(self.by_status),
            "average_diff_percentage": self.average_diff_percentage,
            "sessions": self.sessions,
        }
