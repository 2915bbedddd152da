"""Run orchestration: crawl, capture, store and compare one site."""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Optional, Union

from ..capture import (
    CaptureBatch,
    CapturePool,
    CaptureResult,
    CaptureTarget,
    PlaywrightSessionFactory,
    RenderSessionPool,
    Snapshot,
    build_options,
)
from ..capture.codec import snapshot_from_bytes
from ..config.settings import AppSettings, SiteConfig, ensure_data_dirs
from ..config.types import DEVICE_VIEWPORTS, ImageFormat
from ..crawler import (
    CrawledPage,
    CrawlResult,
    PageFetcher,
    PlaywrightPageFetcher,
    RobotsPolicy,
    SiteCrawler,
)
from ..crawler.urls import page_id_for
from ..diff import ComparisonResult, ComparisonStatus, DiffEngine
from ..resilience import (
    ErrorClassification,
    ErrorPolicy,
    ErrorRecord,
    RetryExecutor,
    policy_for,
)
from ..storage import (
    ArtifactNotFoundError,
    ArtifactStore,
    LocalArtifactStore,
    SessionStore,
    SessionType,
    SnapshotRecord,
    artifact_key,
    diff_key,
)
from ..utils.logging import bind_run_context, clear_run_context, get_structured_logger
from .types import PipelineError, RunMode, RunReport, RunRequest, summarize

logger = get_structured_logger(__name__)

Pair = tuple[Optional[Snapshot], Optional[Snapshot]]
Slot = Union[ComparisonResult, Pair]

_CONTEXT_KEYS = ["site_id", "mode", "device"]


class VRTRunner:
    """Runs one mode of the gate against one site.

    ``baseline`` and ``after`` crawl the site, capture every page and store
    the snapshots. ``compare`` pairs the latest stored baseline and after
    snapshots by page_id. ``full`` crawls once, captures both kinds
    back to back and compares them in memory.
    """

    def __init__(
        self,
        settings: AppSettings,
        store: SessionStore,
        artifacts: ArtifactStore,
        capture_pool: CapturePool,
        fetcher: PageFetcher,
        diff_engine: Optional[DiffEngine] = None,
        executor: Optional[RetryExecutor] = None,
        robots: Optional[RobotsPolicy] = None,
    ):
        self.settings = settings
        self.store = store
        self.artifacts = artifacts
        self.capture_pool = capture_pool
        self.fetcher = fetcher
        self.diff_engine = diff_engine or DiffEngine(settings.diff)
        self.executor = executor or RetryExecutor.from_settings(settings.retry)
        self.robots = robots
        self._cancel_event: Optional[asyncio.Event] = None

    def cancel(self) -> None:
        """Stop the current run; unstarted work is reported as CANCELLED."""
        if self._cancel_event is not None:
            logger.warning("Run cancellation requested")
            self._cancel_event.set()

    def close(self) -> None:
        self.diff_engine.close()

    def resolve_site(self, request: RunRequest) -> SiteConfig:
        if request.site_id:
            site = self.settings.get_site(request.site_id)
            if site is None:
                raise PipelineError(f"Unknown site: {request.site_id}")
            if not site.enabled:
                raise PipelineError(f"Site is disabled: {site.id}")
            return site
        if request.url:
            return SiteConfig.from_url(
                request.url,
                max_pages=self.settings.crawl.max_pages,
                max_depth=self.settings.crawl.max_depth,
            )
        raise PipelineError("Either a site id or a URL is required")

    async def run(self, request: RunRequest) -> RunReport:
        mode = RunMode(request.mode)
        if request.device not in DEVICE_VIEWPORTS:
            raise PipelineError(f"Unknown device: {request.device}")
        threshold = (
            self.settings.diff.threshold if request.threshold is None else request.threshold
        )
        if not 0.0 <= threshold <= 100.0:
            raise PipelineError("Threshold must be between 0 and 100")
        if request.max_urls is not None and request.max_urls < 1:
            raise PipelineError("max_urls must be at least 1")

        site = self.resolve_site(request)
        self._cancel_event = asyncio.Event()
        report = RunReport(
            site_id=site.id, mode=mode, device=request.device, threshold=threshold
        )
        started = time.time()

        bind_run_context(site_id=site.id, mode=mode.value, device=request.device)
        logger.info("Starting run", start_url=site.start_url, threshold=threshold)

        try:
            if mode == RunMode.COMPARE:
                await self._run_compare(site, request.device, threshold, report)
            elif mode == RunMode.FULL:
                await self._run_full(site, request, threshold, report)
            else:
                await self._run_capture(site, request, SessionType(mode.value), report)

            report.aborted = report.aborted or self._cancel_event.is_set()
            report.duration = time.time() - started
            logger.info(
                "Run completed",
                aborted=report.aborted,
                duration=round(report.duration, 3),
                **report.summary,
            )
        finally:
            clear_run_context(_CONTEXT_KEYS)

        return report

    # Modes

    async def _run_capture(
        self,
        site: SiteConfig,
        request: RunRequest,
        kind: SessionType,
        report: RunReport,
    ) -> None:
        crawl = await self._crawl(site, request, report)
        if not crawl.pages:
            report.pages = [_empty_crawl(crawl, report.threshold)]
            return

        batch = await self._capture(site, request.device, kind, crawl.pages, report)
        report.pages = [_capture_outcome(r, kind, report.threshold) for r in batch.results]

    async def _run_full(
        self,
        site: SiteConfig,
        request: RunRequest,
        threshold: float,
        report: RunReport,
    ) -> None:
        crawl = await self._crawl(site, request, report)
        if not crawl.pages:
            report.pages = [_empty_crawl(crawl, threshold)]
            return

        baseline = await self._capture(
            site, request.device, SessionType.BASELINE, crawl.pages, report
        )
        after = await self._capture(site, request.device, SessionType.AFTER, crawl.pages, report)

        baseline_by_id = {r.page_id: r for r in baseline.results}
        after_by_id = {r.page_id: r for r in after.results}
        slots: list[Slot] = []
        for page in crawl.pages:
            b = baseline_by_id[page.page_id]
            a = after_by_id[page.page_id]
            if not b.success:
                slots.append(_failed_capture(b, threshold))
            elif not a.success:
                slots.append(_failed_capture(a, threshold))
            else:
                slots.append((b.snapshot, a.snapshot))

        results, errors = await self._compare_slots(slots, threshold)
        results = await self._store_diffs(site.id, request.device, results, errors)
        report.pages = results
        report.session_ids["compare"] = await self.store.record_comparison_session(
            site.id,
            request.device,
            results,
            threshold,
            errors=errors,
            baseline_session_id=report.session_ids.get("baseline"),
            after_session_id=report.session_ids.get("after"),
            summary=summarize(results),
            aborted=self._cancel_event.is_set(),
        )
        report.metrics["diff"] = self.diff_engine.metrics.to_dict()

    async def _run_compare(
        self,
        site: SiteConfig,
        device: str,
        threshold: float,
        report: RunReport,
    ) -> None:
        baseline_records = await self.store.latest_snapshots(
            site.id, device, SessionType.BASELINE
        )
        after_records = await self.store.latest_snapshots(site.id, device, SessionType.AFTER)
        baseline_session_id = baseline_records[0].session_id if baseline_records else None
        after_session_id = after_records[0].session_id if after_records else None

        logger.info(
            "Loaded stored snapshots",
            baseline=len(baseline_records),
            after=len(after_records),
            baseline_session_id=baseline_session_id,
            after_session_id=after_session_id,
        )

        errors: list[ErrorRecord] = []
        record_pairs = self._pair_records(baseline_records, after_records)
        pairs = await asyncio.gather(
            *(self._load_pair(b, a, errors) for b, a in record_pairs)
        )

        results, compare_errors = await self._compare_slots(list(pairs), threshold)
        errors.extend(compare_errors)
        results = await self._store_diffs(site.id, device, results, errors)
        if not results:
            results = [_nothing_stored(site, threshold, missing_baseline=not baseline_records)]
        report.pages = results
        if baseline_session_id:
            report.session_ids["baseline"] = baseline_session_id
        if after_session_id:
            report.session_ids["after"] = after_session_id
        report.session_ids["compare"] = await self.store.record_comparison_session(
            site.id,
            device,
            results,
            threshold,
            errors=errors,
            baseline_session_id=baseline_session_id,
            after_session_id=after_session_id,
            summary=summarize(results),
            aborted=self._cancel_event.is_set(),
        )
        report.metrics["diff"] = self.diff_engine.metrics.to_dict()

    # Steps

    async def _crawl(
        self, site: SiteConfig, request: RunRequest, report: RunReport
    ) -> CrawlResult:
        crawler = SiteCrawler(
            site,
            self.fetcher,
            settings=self.settings.crawl,
            executor=self.executor,
            robots=self.robots,
        )
        crawl = await crawler.crawl(max_pages=request.max_urls, max_depth=request.max_depth)
        report.session_ids["crawl"] = await self.store.record_crawl_session(
            crawl, request.device
        )
        report.metrics["crawl"] = {
            "pages": len(crawl.pages),
            "skipped": crawl.skipped,
            "duration": round(crawl.crawl_duration, 3),
        }
        return crawl

    async def _capture(
        self,
        site: SiteConfig,
        device: str,
        kind: SessionType,
        pages: list[CrawledPage],
        report: RunReport,
    ) -> CaptureBatch:
        options = build_options(self.settings.capture, device)
        targets = [CaptureTarget(url=page.url, page_id=page.page_id) for page in pages]
        batch = await self.capture_pool.capture(
            targets,
            options,
            namespace=kind.value,
            cancel_event=self._cancel_event,
        )

        keys = await self._store_artifacts(site.id, device, kind, batch)
        report.session_ids[kind.value] = await self.store.record_capture_session(
            site.id, kind, device, batch, keys
        )
        report.metrics[f"capture_{kind.value}"] = batch.metrics.to_dict()
        if batch.aborted:
            report.aborted = True
        return batch

    async def _store_artifacts(
        self, site_id: str, device: str, kind: SessionType, batch: CaptureBatch
    ) -> dict[str, str]:
        keys: dict[str, str] = {}

        async def store_one(result: CaptureResult) -> None:
            snapshot = result.snapshot
            key = artifact_key(site_id, device, kind.value, snapshot)
            outcome = await self.executor.run(
                lambda: self.artifacts.put(key, snapshot.image_bytes),
                "artifact.put",
                {"page_id": result.page_id, "key": key},
            )
            if outcome.ok:
                keys[result.page_id] = key
                return

            # An unstored snapshot cannot be compared later
            result.snapshot = None
            result.error = outcome.message
            result.classification = outcome.classification
            result.errors.extend(outcome.errors)
            batch.metrics.captured -= 1
            batch.metrics.errors += 1

        await asyncio.gather(*(store_one(r) for r in batch.results if r.success))
        return keys

    async def _store_diffs(
        self,
        site_id: str,
        device: str,
        results: list[ComparisonResult],
        errors: list[ErrorRecord],
    ) -> list[ComparisonResult]:
        """Store rendered diff overlays and swap the image bytes for ``diff_ref``."""

        async def store_one(result: ComparisonResult) -> ComparisonResult:
            if result.diff_image is None:
                return result
            key = diff_key(site_id, device, result.page_id, result.diff_image)
            outcome = await self.executor.run(
                lambda: self.artifacts.put(key, result.diff_image),
                "artifact.put",
                {"page_id": result.page_id, "key": key},
            )
            errors.extend(outcome.errors)
            # The verdict stands without an overlay
            return replace(result, diff_ref=key if outcome.ok else None, diff_image=None)

        return list(await asyncio.gather(*(store_one(r) for r in results)))

    def _pair_records(
        self,
        baseline_records: list[SnapshotRecord],
        after_records: list[SnapshotRecord],
    ) -> list[tuple[Optional[SnapshotRecord], Optional[SnapshotRecord]]]:
        """Pair stored snapshots by page_id, baseline order first."""
        baseline_records = sorted(baseline_records, key=_by_position)
        after_records = sorted(after_records, key=_by_position)
        after_by_id = {r.page_id: r for r in after_records}
        baseline_ids = {r.page_id for r in baseline_records}

        unmatched_baseline = [r for r in baseline_records if r.page_id not in after_by_id]
        unmatched_after = [r for r in after_records if r.page_id not in baseline_ids]

        positional: dict[str, SnapshotRecord] = {}
        if self.settings.pipeline.positional_fallback:
            for b, a in zip(unmatched_baseline, unmatched_after):
                positional[b.page_id] = a
            if positional:
                logger.info("Paired snapshots by position", pairs=len(positional))

        consumed = {a.page_id for a in positional.values()}
        pairs: list[tuple[Optional[SnapshotRecord], Optional[SnapshotRecord]]] = []
        for b in baseline_records:
            pairs.append((b, after_by_id.get(b.page_id) or positional.get(b.page_id)))
        for a in after_records:
            if a.page_id not in baseline_ids and a.page_id not in consumed:
                pairs.append((None, a))
        return pairs

    async def _load_pair(
        self,
        baseline: Optional[SnapshotRecord],
        after: Optional[SnapshotRecord],
        errors: list[ErrorRecord],
    ) -> Pair:
        baseline_snapshot = await self._load(baseline, errors) if baseline else None
        after_snapshot = await self._load(after, errors) if after else None
        if (
            baseline_snapshot is not None
            and after_snapshot is not None
            and after_snapshot.page_id != baseline_snapshot.page_id
        ):
            after_snapshot = replace(after_snapshot, page_id=baseline_snapshot.page_id)
        return baseline_snapshot, after_snapshot

    async def _load(
        self, record: SnapshotRecord, errors: list[ErrorRecord]
    ) -> Optional[Snapshot]:
        try:
            data = await self.artifacts.get(record.artifact_key)
        except ArtifactNotFoundError as e:
            classification = (
                ErrorClassification.MISSING_BASELINE
                if record.kind == SessionType.BASELINE.value
                else ErrorClassification.MISSING_AFTER
            )
            errors.append(
                ErrorRecord(
                    operation="artifact.get",
                    classification=classification,
                    attempt=1,
                    message=str(e),
                    context={"page_id": record.page_id, "key": record.artifact_key},
                )
            )
            logger.warning(
                "Stored snapshot is missing", page_id=record.page_id, key=record.artifact_key
            )
            return None

        return snapshot_from_bytes(
            record.page_id,
            record.url,
            data,
            ImageFormat(record.image_format),
            record.captured_at,
        )

    async def _compare_slots(
        self, slots: list[Slot], threshold: float
    ) -> tuple[list[ComparisonResult], list[ErrorRecord]]:
        """Compare every slot; a FAIL_BATCH failure cancels pairs not yet started."""
        errors: list[ErrorRecord] = []
        semaphore = asyncio.Semaphore(self.diff_engine.settings.max_concurrency)

        async def resolve(slot: Slot) -> ComparisonResult:
            if isinstance(slot, ComparisonResult):
                return slot

            baseline, after = slot
            present = baseline or after
            page_id = present.page_id if present else ""
            async with semaphore:
                if self._cancel_event.is_set():
                    return ComparisonResult(
                        page_id=page_id,
                        url=present.url if present else "",
                        status=ComparisonStatus.ERROR,
                        threshold=threshold,
                        classification=ErrorClassification.CANCELLED,
                        message="Run cancelled before comparison",
                    )

                outcome = await self.executor.run(
                    lambda: self.diff_engine.compare_async(baseline, after, threshold),
                    "diff.compare",
                    {"page_id": page_id},
                )
                errors.extend(outcome.errors)
                if outcome.ok:
                    return outcome.value

                policy = policy_for(outcome.cause_classification or outcome.classification)
                if policy == ErrorPolicy.FAIL_BATCH and not self._cancel_event.is_set():
                    self._cancel_event.set()
                    logger.error(
                        "Aborting comparison batch",
                        page_id=page_id,
                        classification=outcome.classification.value,
                        error=outcome.message,
                    )

            return ComparisonResult(
                page_id=page_id,
                url=present.url if present else "",
                status=ComparisonStatus.ERROR,
                threshold=threshold,
                baseline_ref=baseline.content_hash if baseline else None,
                after_ref=after.content_hash if after else None,
                classification=outcome.classification,
                message=outcome.message,
            )

        results = await asyncio.gather(*(resolve(slot) for slot in slots))
        return list(results), errors


def _by_position(record: SnapshotRecord) -> tuple[int, str]:
    return record.position, record.page_id


def _failed_capture(result: CaptureResult, threshold: float) -> ComparisonResult:
    classification = result.classification or ErrorClassification.UNKNOWN
    status = (
        ComparisonStatus.SKIP
        if policy_for(classification) == ErrorPolicy.SKIP
        else ComparisonStatus.ERROR
    )
    return ComparisonResult(
        page_id=result.page_id,
        url=result.url,
        status=status,
        threshold=threshold,
        classification=classification,
        message=result.error or "Capture failed",
    )


def _capture_outcome(
    result: CaptureResult, kind: SessionType, threshold: float
) -> ComparisonResult:
    if not result.success:
        return _failed_capture(result, threshold)

    ref = result.snapshot.content_hash
    return ComparisonResult(
        page_id=result.page_id,
        url=result.url,
        status=ComparisonStatus.OK,
        threshold=threshold,
        baseline_ref=ref if kind == SessionType.BASELINE else None,
        after_ref=ref if kind == SessionType.AFTER else None,
        message="Captured from cache" if result.from_cache else "Captured",
    )


def _empty_crawl(crawl: CrawlResult, threshold: float) -> ComparisonResult:
    classification = crawl.errors[-1].classification if crawl.errors else None
    return ComparisonResult(
        page_id=page_id_for(crawl.start_url),
        url=crawl.start_url,
        status=ComparisonStatus.ERROR,
        threshold=threshold,
        classification=classification,
        message="Crawl found no pages",
    )


def _nothing_stored(
    site: SiteConfig, threshold: float, missing_baseline: bool
) -> ComparisonResult:
    return ComparisonResult(
        page_id=page_id_for(site.start_url),
        url=site.start_url,
        status=ComparisonStatus.SKIP,
        threshold=threshold,
        classification=(
            ErrorClassification.MISSING_BASELINE
            if missing_baseline
            else ErrorClassification.MISSING_AFTER
        ),
        message=(
            "No stored baseline snapshots" if missing_baseline else "No stored after snapshots"
        ),
    )


@asynccontextmanager
async def create_runner(settings: AppSettings):
    """Wire a runner to Playwright, SQLite and the local artifact store.

    Browsers are launched on first use, so ``compare`` runs never start one.
    """
    ensure_data_dirs(settings)
    executor = RetryExecutor.from_settings(settings.retry)
    factory = PlaywrightSessionFactory(settings.capture, settings.crawl.user_agent)
    sessions = RenderSessionPool(factory, settings.capture.session_pool_size)
    fetcher = PlaywrightPageFetcher(sessions)
    robots = (
        RobotsPolicy(fetcher, settings.crawl.user_agent)
        if settings.crawl.respect_robots
        else None
    )

    async with SessionStore(settings.database) as store:
        runner = VRTRunner(
            settings,
            store,
            LocalArtifactStore(settings.storage.artifacts_dir),
            CapturePool(sessions, settings.capture, executor=executor),
            fetcher,
            diff_engine=DiffEngine(settings.diff),
            executor=executor,
            robots=robots,
        )
        try:
            yield runner
        finally:
            runner.close()
            await sessions.cleanup()
            await factory.cleanup()
