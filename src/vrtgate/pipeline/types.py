"""Type definitions for run orchestration."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..diff.types import ComparisonResult, ComparisonStatus


class PipelineError(Exception):
    """Raised when a run request cannot be started."""

    pass


class RunMode(str, Enum):
    BASELINE = "baseline"
    AFTER = "after"
    COMPARE = "compare"
    FULL = "full"


@dataclass(frozen=True)
class RunRequest:
    """One invocation of the gate."""

    mode: RunMode
    site_id: Optional[str] = None
    url: Optional[str] = None
    device: str = "desktop"
    max_urls: Optional[int] = None
    max_depth: Optional[int] = None
    threshold: Optional[float] = None


def summarize(pages: list[ComparisonResult]) -> dict[str, int]:
    summary = {status.value: 0 for status in ComparisonStatus}
    for page in pages:
        summary[page.status.value] += 1
    summary["total"] = len(pages)
    return summary


@dataclass
class RunReport:
    """Outcome of a run; every requested page appears exactly once."""

    site_id: str
    mode: RunMode
    device: str
    threshold: float
    pages: list[ComparisonResult] = field(default_factory=list)
    aborted: bool = False
    session_ids: dict[str, str] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.utcnow)
    duration: float = 0.0

    @property
    def summary(self) -> dict[str, int]:
        return summarize(self.pages)

    @property
    def has_regressions(self) -> bool:
        return self.summary[ComparisonStatus.NG.value] > 0

    @property
    def has_errors(self) -> bool:
        return self.summary[ComparisonStatus.ERROR.value] > 0

    @property
    def has_comparisons(self) -> bool:
        """True when at least one page reached an OK or NG verdict."""
        summary = self.summary
        return summary[ComparisonStatus.OK.value] + summary[ComparisonStatus.NG.value] > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "site_id": self.site_id,
            "mode": self.mode.value,
            "device": self.device,
            "threshold": self.threshold,
            "summary": self.summary,
            "aborted": self.aborted,
            "session_ids": dict(self.session_ids),
            "metrics": self.metrics,
            "started_at": self.started_at.isoformat(),
            "duration": round(self.duration, 3),
            "pages": [page.to_dict() for page in self.pages],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)
