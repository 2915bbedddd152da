"""Type definitions for the diff engine."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

import numpy as np

from ..resilience.types import ErrorClassification


class DiffError(Exception):
    """Base exception for diff-related errors."""

    pass


class ComparisonStatus(str, Enum):
    OK = "OK"
    NG = "NG"
    SKIP = "SKIP"
    ERROR = "ERROR"


class ComparisonPhase(str, Enum):
    """Which phase produced the verdict."""

    IDENTICAL = "identical"
    PREFILTER = "prefilter"
    PIXEL = "pixel"
    SEMANTIC = "semantic"
    NONE = "none"


class RegionKind(str, Enum):
    LAYOUT = "layout"
    CONTENT = "content"
    MINOR = "minor"


@dataclass(frozen=True)
class BoundingBox:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class Region:
    bounding_box: BoundingBox
    area: int
    classification: RegionKind

    def to_dict(self) -> dict[str, Any]:
        return {
            "x": self.bounding_box.x,
            "y": self.bounding_box.y,
            "width": self.bounding_box.width,
            "height": self.bounding_box.height,
            "area": self.area,
            "classification": self.classification.value,
        }


@dataclass(frozen=True)
class ComparisonResult:
    """Verdict for one baseline/after page pair."""

    page_id: str
    url: str
    status: ComparisonStatus
    threshold: float
    diff_percentage: float = 0.0
    diff_pixel_count: int = 0
    phase: ComparisonPhase = ComparisonPhase.NONE
    baseline_ref: Optional[str] = None
    after_ref: Optional[str] = None
    diff_ref: Optional[str] = None
    regions: tuple[Region, ...] = ()
    classification: Optional[ErrorClassification] = None
    change_type: Optional[RegionKind] = None
    confidence: float = 0.0
    message: str = ""
    processing_ms: float = 0.0
    diff_image: Optional[bytes] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_id": self.page_id,
            "url": self.url,
            "status": self.status.value,
            "threshold": self.threshold,
            "diff_percentage": round(self.diff_percentage, 4),
            "diff_pixel_count": self.diff_pixel_count,
            "phase": self.phase.value,
            "baseline_ref": self.baseline_ref,
            "after_ref": self.after_ref,
            "diff_ref": self.diff_ref,
            "regions": [r.to_dict() for r in self.regions],
            "classification": self.classification.value if self.classification else None,
            "change_type": self.change_type.value if self.change_type else None,
            "confidence": round(self.confidence, 3),
            "message": self.message,
        }


@dataclass(frozen=True)
class PixelDiff:
    mask: np.ndarray = field(repr=False)
    count: int


@dataclass(frozen=True)
class ImageStats:
    histogram_distance: float
    edge_density_delta: float


class PixelComparator(Protocol):
    """Raw pixel comparison capability on H x W x 3 uint8 arrays."""

    def compare(
        self,
        a: np.ndarray,
        b: np.ndarray,
        threshold: float = 0.1,
        include_antialiasing: bool = False,
    ) -> PixelDiff:
        ...


@dataclass
class DiffMetrics:
    comparisons: int = 0
    identical: int = 0
    prefilter_skips: int = 0
    pixel_scans: int = 0
    semantic_analyses: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "comparisons": self.comparisons,
            "identical": self.identical,
            "prefilter_skips": self.prefilter_skips,
            "pixel_scans": self.pixel_scans,
            "semantic_analyses": self.semantic_analyses,
            "errors": self.errors,
        }
