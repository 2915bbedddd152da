"""Type definitions for the capture module."""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from ..config.types import ImageFormat
from ..resilience.types import ErrorClassification, ErrorRecord


class CaptureError(Exception):
    """Base exception for capture-related errors."""

    pass


@dataclass(frozen=True)
class WaitCondition:
    """Readiness rule applied after DOMContentLoaded.

    With a selector the session waits for it up to ``timeout_ms`` and falls
    back to the settle delay if it never appears. Without one it just
    sleeps ``settle_ms``.
    """

    selector: Optional[str] = None
    timeout_ms: int = 2000
    settle_ms: int = 500


@dataclass(frozen=True)
class CaptureOptions:
    """Everything that affects the pixels of a capture."""

    device: str = "desktop"
    viewport: tuple[int, int] = (1920, 1080)
    full_page: bool = True
    wait: WaitCondition = field(default_factory=WaitCondition)
    image_format: ImageFormat = ImageFormat.PNG
    quality: int = 80

    @property
    def viewport_dict(self) -> dict[str, int]:
        return {"width": self.viewport[0], "height": self.viewport[1]}

    def cache_fingerprint(self) -> str:
        data = asdict(self)
        data["image_format"] = self.image_format.value
        return json.dumps(data, sort_keys=True)


@dataclass(frozen=True)
class CaptureTarget:
    url: str
    page_id: str


@dataclass(frozen=True)
class Snapshot:
    """An encoded raster of one page. Content-addressed and never mutated."""

    page_id: str
    url: str
    image_bytes: bytes = field(repr=False)
    width: int
    height: int
    content_hash: str
    image_format: ImageFormat = ImageFormat.PNG
    captured_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def size_bytes(self) -> int:
        return len(self.image_bytes)


@dataclass
class CaptureResult:
    """Outcome of capturing one target."""

    url: str
    page_id: str
    snapshot: Optional[Snapshot] = None
    load_time_ms: float = 0.0
    from_cache: bool = False
    error: Optional[str] = None
    classification: Optional[ErrorClassification] = None
    errors: list[ErrorRecord] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.snapshot is not None


@dataclass
class CaptureMetrics:
    total: int = 0
    captured: int = 0
    cache_hits: int = 0
    errors: int = 0
    total_time: float = 0.0
    total_load_ms: float = 0.0
    peak_in_flight: int = 0

    @property
    def cache_hit_rate(self) -> float:
        return self.cache_hits / self.total if self.total else 0.0

    @property
    def mean_latency_ms(self) -> float:
        return self.total_load_ms / self.captured if self.captured else 0.0

    @property
    def pages_per_second(self) -> float:
        return self.total / self.total_time if self.total_time > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "captured": self.captured,
            "cache_hits": self.cache_hits,
            "errors": self.errors,
            "cache_hit_rate": round(self.cache_hit_rate, 4),
            "mean_latency_ms": round(self.mean_latency_ms, 2),
            "pages_per_second": round(self.pages_per_second, 3),
            "peak_in_flight": self.peak_in_flight,
            "total_time": round(self.total_time, 3),
        }


@dataclass
class CaptureBatch:
    results: list[CaptureResult]
    metrics: CaptureMetrics
    aborted: bool = False
    abort_reason: Optional[str] = None

    @property
    def snapshots(self) -> dict[str, Snapshot]:
        return {r.page_id: r.snapshot for r in self.results if r.snapshot is not None}

    @property
    def errors(self) -> list[ErrorRecord]:
        return [record for r in self.results for record in r.errors]


class RenderSession(Protocol):
    """A long-lived rendering context that can show one page at a time."""

    async def open(self, url: str, viewport: dict[str, int]) -> None:
        ...

    async def wait_for(self, condition: WaitCondition) -> None:
        ...

    async def capture_raster(self, full_page: bool = True) -> bytes:
        ...

    async def title(self) -> str:
        ...

    async def links(self) -> list[str]:
        ...

    async def fetch_text(self, url: str) -> Optional[str]:
        ...

    async def close(self) -> None:
        ...
