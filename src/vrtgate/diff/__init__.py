"""Snapshot comparison."""

from .engine import DiffEngine
from .pixel import PixelmatchComparator, YIQPixelComparator, comparator_for
from .regions import classify_area, confidence, dominant_kind, extract_regions
from .stats import compare_stats, edge_density, histogram_distance, luma, luma_histogram
from .types import (
    BoundingBox,
    ComparisonPhase,
    ComparisonResult,
    ComparisonStatus,
    DiffError,
    DiffMetrics,
    ImageStats,
    PixelComparator,
    PixelDiff,
    Region,
    RegionKind,
)

__all__ = [
    "DiffEngine",
    "YIQPixelComparator",
    "PixelmatchComparator",
    "comparator_for",
    "PixelComparator",
    "PixelDiff",
    "extract_regions",
    "classify_area",
    "dominant_kind",
    "confidence",
    "compare_stats",
    "edge_density",
    "histogram_distance",
    "luma",
    "luma_histogram",
    "BoundingBox",
    "ComparisonPhase",
    "ComparisonResult",
    "ComparisonStatus",
    "DiffError",
    "DiffMetrics",
    "ImageStats",
    "Region",
    "RegionKind",
]
