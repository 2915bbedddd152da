"""Bounded, cached, batch capture of page snapshots."""

import asyncio
import dataclasses
import time
from collections.abc import Sequence
from typing import Optional

from ..config.settings import CaptureSettings
from ..config.types import DEVICE_VIEWPORTS
from ..resilience import (
    BatchCancelledError,
    ErrorClassification,
    ErrorPolicy,
    ErrorRecord,
    RetryExecutor,
    policy_for,
)
from ..utils.logging import get_structured_logger
from .browser import RenderSessionPool
from .cache import SnapshotCache, cache_key
from .codec import make_snapshot
from .types import (
    CaptureBatch,
    CaptureError,
    CaptureMetrics,
    CaptureOptions,
    CaptureResult,
    CaptureTarget,
    Snapshot,
    WaitCondition,
)

logger = get_structured_logger(__name__)


def build_options(settings: CaptureSettings, device: str = "desktop") -> CaptureOptions:
    """Capture options for a device preset under the configured render policy."""
    if device not in DEVICE_VIEWPORTS:
        raise CaptureError(f"Unknown device: {device}")
    viewport = DEVICE_VIEWPORTS[device]
    return CaptureOptions(
        device=device,
        viewport=(viewport["width"], viewport["height"]),
        full_page=settings.full_page,
        wait=WaitCondition(
            selector=settings.wait_selector,
            timeout_ms=settings.wait_timeout_ms,
            settle_ms=settings.settle_ms,
        ),
        image_format=settings.image_format,
        quality=settings.quality,
    )


class CapturePool:
    """Captures many pages concurrently over a small set of render sessions.

    Admission is bounded by a semaphore independent of the session count,
    so queued captures wait for a slot and then for a free session.
    """

    def __init__(
        self,
        sessions: RenderSessionPool,
        settings: Optional[CaptureSettings] = None,
        cache: Optional[SnapshotCache] = None,
        executor: Optional[RetryExecutor] = None,
    ):
        self.sessions = sessions
        self.settings = settings or CaptureSettings()
        self.cache = cache or SnapshotCache(
            max_entries=self.settings.cache_max_entries,
            ttl_seconds=self.settings.cache_ttl_seconds,
        )
        self.executor = executor or RetryExecutor()
        self.semaphore = asyncio.Semaphore(self.settings.max_concurrency)
        self.in_flight = 0

    async def capture(
        self,
        targets: Sequence[CaptureTarget],
        options: CaptureOptions,
        namespace: str = "",
        cancel_event: Optional[asyncio.Event] = None,
        use_cache: bool = True,
    ) -> CaptureBatch:
        """Capture every target; returns exactly one result per target, in order.

        A failure classified as FAIL_BATCH sets ``cancel_event``; targets
        that have not started yet are then reported as CANCELLED.
        """
        cancel_event = cancel_event or asyncio.Event()
        metrics = CaptureMetrics(total=len(targets))
        abort: dict[str, str] = {}
        start_time = time.time()

        logger.info(
            "Starting capture batch",
            targets=len(targets),
            namespace=namespace,
            device=options.device,
        )

        results = await asyncio.gather(
            *(
                self._capture_one(
                    target, options, namespace, cancel_event, metrics, use_cache, abort
                )
                for target in targets
            )
        )

        metrics.total_time = time.time() - start_time
        aborted = cancel_event.is_set()

        logger.info(
            "Capture batch completed",
            namespace=namespace,
            aborted=aborted,
            **metrics.to_dict(),
        )

        return CaptureBatch(
            results=list(results),
            metrics=metrics,
            aborted=aborted,
            abort_reason=abort.get("reason") or ("cancelled" if aborted else None),
        )

    async def _capture_one(
        self,
        target: CaptureTarget,
        options: CaptureOptions,
        namespace: str,
        cancel_event: asyncio.Event,
        metrics: CaptureMetrics,
        use_cache: bool,
        abort: dict[str, str],
    ) -> CaptureResult:
        async with self.semaphore:
            if cancel_event.is_set():
                metrics.errors += 1
                return self._cancelled(target)

            key = cache_key(target.url, options, namespace)
            if use_cache:
                cached = self.cache.get(key)
                if cached is not None:
                    metrics.cache_hits += 1
                    if cached.page_id != target.page_id:
                        cached = dataclasses.replace(cached, page_id=target.page_id)
                    return CaptureResult(
                        url=target.url,
                        page_id=target.page_id,
                        snapshot=cached,
                        from_cache=True,
                    )

            self.in_flight += 1
            metrics.peak_in_flight = max(metrics.peak_in_flight, self.in_flight)
            started = time.perf_counter()
            try:
                outcome = await self.executor.run(
                    lambda: self._render(target, options, cancel_event),
                    "capture.page",
                    {"url": target.url, "page_id": target.page_id, "device": options.device},
                )
            finally:
                self.in_flight -= 1
            load_time_ms = (time.perf_counter() - started) * 1000.0

        if outcome.ok:
            snapshot: Snapshot = outcome.value
            self.cache.put(key, snapshot)
            metrics.captured += 1
            metrics.total_load_ms += load_time_ms
            return CaptureResult(
                url=target.url,
                page_id=target.page_id,
                snapshot=snapshot,
                load_time_ms=load_time_ms,
                errors=list(outcome.errors),
            )

        metrics.errors += 1
        policy = policy_for(outcome.cause_classification or outcome.classification)
        if policy == ErrorPolicy.FAIL_BATCH and not cancel_event.is_set():
            abort["reason"] = outcome.message
            cancel_event.set()
            logger.error(
                "Aborting capture batch",
                url=target.url,
                classification=outcome.classification.value,
                error=outcome.message,
            )

        return CaptureResult(
            url=target.url,
            page_id=target.page_id,
            load_time_ms=load_time_ms,
            error=outcome.message,
            classification=outcome.classification,
            errors=list(outcome.errors),
        )

    async def _render(
        self,
        target: CaptureTarget,
        options: CaptureOptions,
        cancel_event: asyncio.Event,
    ) -> Snapshot:
        async with self.sessions.lease() as session:
            # Admitted captures may queue for a session after an abort
            if cancel_event.is_set():
                raise BatchCancelledError("Batch cancelled before capture started")
            await session.open(target.url, options.viewport_dict)
            await session.wait_for(options.wait)
            raster = await session.capture_raster(options.full_page)

        return await asyncio.to_thread(
            make_snapshot,
            target.page_id,
            target.url,
            raster,
            options.image_format,
            options.quality,
        )

    def _cancelled(self, target: CaptureTarget) -> CaptureResult:
        record = ErrorRecord(
            operation="capture.page",
            classification=ErrorClassification.CANCELLED,
            attempt=0,
            message="Batch cancelled before capture started",
            context={"url": target.url, "page_id": target.page_id},
        )
        return CaptureResult(
            url=target.url,
            page_id=target.page_id,
            error=record.message,
            classification=ErrorClassification.CANCELLED,
            errors=[record],
        )
