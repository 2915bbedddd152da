"""Multi-phase visual diff engine."""

import asyncio
import threading
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Optional

from ..capture.codec import (
    clip_to_common,
    decode,
    pad_to_common,
    render_diff_overlay,
    to_array,
)
from ..capture.types import Snapshot
from ..config.settings import DiffSettings
from ..config.types import SizeMismatchPolicy
from ..resilience.types import CorruptedImageError, ErrorClassification
from ..utils.logging import get_structured_logger
from .pixel import comparator_for
from .regions import confidence, dominant_kind, extract_regions
from .stats import compare_stats
from .types import (
    ComparisonPhase,
    ComparisonResult,
    ComparisonStatus,
    DiffError,
    DiffMetrics,
    PixelComparator,
)

logger = get_structured_logger(__name__)


class DiffEngine:
    """Compares baseline and after snapshots of the same page.

    Phases run cheapest first and stop at the first conclusive one:
    identity of the encoded bytes, a histogram/edge prefilter for same-size
    images, the exact pixel diff, and region analysis for large diffs.
    """

    def __init__(
        self,
        settings: Optional[DiffSettings] = None,
        comparator: Optional[PixelComparator] = None,
    ):
        self.settings = settings or DiffSettings()
        self.comparator = comparator or comparator_for(self.settings.pixel_backend)
        self.metrics = DiffMetrics()
        self._metrics_lock = threading.Lock()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._semaphore: Optional[asyncio.Semaphore] = None

    def _count(self, name: str) -> None:
        with self._metrics_lock:
            setattr(self.metrics, name, getattr(self.metrics, name) + 1)

    def compare(
        self,
        baseline: Optional[Snapshot],
        after: Optional[Snapshot],
        threshold: Optional[float] = None,
    ) -> ComparisonResult:
        threshold = self.settings.threshold if threshold is None else threshold
        if not 0.0 <= threshold <= 100.0:
            raise DiffError(f"Threshold must be between 0 and 100, got {threshold}")
        started = time.perf_counter()
        self._count("comparisons")

        result = self._compare(baseline, after, threshold)
        if result.status == ComparisonStatus.ERROR:
            self._count("errors")

        elapsed = (time.perf_counter() - started) * 1000.0
        logger.debug(
            "Comparison finished",
            page_id=result.page_id,
            status=result.status.value,
            phase=result.phase.value,
            diff_percentage=round(result.diff_percentage, 4),
            processing_ms=round(elapsed, 2),
        )
        return _with(result, processing_ms=elapsed)

    def _compare(
        self,
        baseline: Optional[Snapshot],
        after: Optional[Snapshot],
        threshold: float,
    ) -> ComparisonResult:
        if baseline is None or after is None:
            present = baseline or after
            missing_baseline = baseline is None
            return ComparisonResult(
                page_id=present.page_id if present else "",
                url=present.url if present else "",
                status=ComparisonStatus.SKIP,
                threshold=threshold,
                baseline_ref=baseline.content_hash if baseline else None,
                after_ref=after.content_hash if after else None,
                classification=(
                    ErrorClassification.MISSING_BASELINE
                    if missing_baseline
                    else ErrorClassification.MISSING_AFTER
                ),
                message="No baseline snapshot" if missing_baseline else "No after snapshot",
            )

        base = ComparisonResult(
            page_id=baseline.page_id,
            url=after.url or baseline.url,
            status=ComparisonStatus.OK,
            threshold=threshold,
            baseline_ref=baseline.content_hash,
            after_ref=after.content_hash,
        )

        if baseline.page_id != after.page_id:
            return _with(
                base,
                status=ComparisonStatus.ERROR,
                message=f"page_id mismatch: {baseline.page_id} != {after.page_id}",
            )

        # Phase 1: identical encodings
        if (
            len(baseline.image_bytes) == len(after.image_bytes)
            and baseline.content_hash == after.content_hash
        ):
            self._count("identical")
            return _with(base, phase=ComparisonPhase.IDENTICAL, message="Identical snapshots")

        try:
            img_a = decode(baseline.image_bytes)
            img_b = decode(after.image_bytes)
        except CorruptedImageError as e:
            return _with(
                base,
                status=ComparisonStatus.ERROR,
                classification=ErrorClassification.CORRUPTED_IMAGE,
                message=str(e),
            )

        same_size = img_a.size == img_b.size
        if not same_size:
            policy = self.settings.size_mismatch_policy
            if policy == SizeMismatchPolicy.REJECT:
                return _with(
                    base,
                    status=ComparisonStatus.SKIP,
                    classification=ErrorClassification.SIZE_MISMATCH,
                    message=f"Size mismatch: {img_a.size} vs {img_b.size}",
                )
            if policy == SizeMismatchPolicy.CLIP:
                img_a, img_b = clip_to_common(img_a, img_b)
            else:
                img_a, img_b = pad_to_common(img_a, img_b, tuple(self.settings.pad_color))

        a = to_array(img_a)
        b = to_array(img_b)
        total_pixels = a.shape[0] * a.shape[1]
        if total_pixels == 0:
            return _with(
                base,
                status=ComparisonStatus.ERROR,
                classification=ErrorClassification.CORRUPTED_IMAGE,
                message="Empty image",
            )

        # Phase 2: statistical prefilter, same-size pairs only
        if same_size and self.settings.prefilter_enabled:
            stats = compare_stats(a, b, self.settings.edge_magnitude)
            if (
                stats.histogram_distance < self.settings.histogram_threshold
                and stats.edge_density_delta < self.settings.edge_density_threshold
            ):
                # Below both cutoffs the pair counts as unchanged at any threshold
                self._count("prefilter_skips")
                return _with(
                    base,
                    phase=ComparisonPhase.PREFILTER,
                    message="Skipped by statistical prefilter",
                )

        # Phase 3: exact pixel diff
        self._count("pixel_scans")
        pixel_diff = self.comparator.compare(
            a,
            b,
            threshold=self.settings.pixel_threshold,
            include_antialiasing=self.settings.include_antialiasing,
        )
        percentage = min(pixel_diff.count / total_pixels * 100.0, 100.0)
        result = _with(
            base,
            status=_status(percentage, threshold),
            diff_percentage=percentage,
            diff_pixel_count=pixel_diff.count,
            phase=ComparisonPhase.PIXEL,
            message=f"{pixel_diff.count} of {total_pixels} pixels differ",
        )
        if result.status == ComparisonStatus.NG and self.settings.render_diff_images:
            result = _with(result, diff_image=render_diff_overlay(img_b, pixel_diff.mask))

        # Phase 4: region analysis for significant diffs
        if percentage > self.settings.significant_threshold:
            self._count("semantic_analyses")
            regions = extract_regions(
                pixel_diff.mask,
                min_area=self.settings.min_region_area,
                layout_area=self.settings.layout_area,
                content_area=self.settings.content_area,
            )
            result = _with(
                result,
                phase=ComparisonPhase.SEMANTIC,
                regions=tuple(regions),
                change_type=dominant_kind(regions),
                confidence=confidence(regions),
            )

        return result

    def _ensure_pool(self) -> None:
        if self._pool is None:
            workers = self.settings.max_concurrency
            self._pool = ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="vrtgate-diff"
            )
            self._semaphore = asyncio.Semaphore(workers)

    async def compare_async(
        self,
        baseline: Optional[Snapshot],
        after: Optional[Snapshot],
        threshold: Optional[float] = None,
    ) -> ComparisonResult:
        """Run ``compare`` on the engine's worker threads."""
        self._ensure_pool()
        loop = asyncio.get_running_loop()
        async with self._semaphore:
            return await loop.run_in_executor(
                self._pool, self.compare, baseline, after, threshold
            )

    async def compare_many(
        self,
        pairs: Sequence[tuple[Optional[Snapshot], Optional[Snapshot]]],
        threshold: Optional[float] = None,
    ) -> list[ComparisonResult]:
        results = await asyncio.gather(
            *(self.compare_async(b, a, threshold) for b, a in pairs)
        )
        logger.info("Comparison batch completed", **self.metrics.to_dict())
        return list(results)

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
            self._semaphore = None


def _status(percentage: float, threshold: float) -> ComparisonStatus:
    return ComparisonStatus.NG if percentage > threshold else ComparisonStatus.OK


def _with(result: ComparisonResult, **changes) -> ComparisonResult:
    return replace(result, **changes)
