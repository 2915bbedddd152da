"""Append-only session store over the SQLAlchemy models."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, desc, func, select

from ..capture.types import CaptureBatch
from ..config.settings import DatabaseSettings
from ..crawler.types import CrawlResult
from ..diff.types import ComparisonResult
from ..resilience.types import ErrorRecord
from ..utils.async_utils import AsyncContextManager
from ..utils.logging import get_structured_logger
from .artifacts import ArtifactStore
from .sqlite import (
    ComparisonRecord,
    CrawledPageRecord,
    DatabaseManager,
    ErrorRecordRow,
    RunSession,
    SnapshotRecord,
)
from .types import ComparisonStats, SessionStatus, SessionType, StorageError

logger = get_structured_logger(__name__)

_ARTIFACT_COLUMNS = (
    (SnapshotRecord, SnapshotRecord.artifact_key),
    (ComparisonRecord, ComparisonRecord.diff_ref),
)


class SessionStore(AsyncContextManager):
    """Durable record of crawl, capture and comparison sessions.

    Every ``record_*`` call inserts one finished session together with its
    child rows in a single transaction. Rows are never updated afterwards;
    ``purge_older_than`` is the only delete path.
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        db_manager: Optional[DatabaseManager] = None,
    ):
        self.db_manager = db_manager or DatabaseManager(settings or DatabaseSettings())
        self._owns_manager = db_manager is None

    async def setup(self) -> None:
        await self.db_manager.setup()

    async def cleanup(self) -> None:
        if self._owns_manager:
            await self.db_manager.cleanup()

    # Writes

    async def record_crawl_session(
        self, crawl: CrawlResult, device: Optional[str] = None
    ) -> str:
        session_row = RunSession(
            site_id=crawl.site_id,
            session_type=SessionType.CRAWL.value,
            device=device,
            status=SessionStatus.COMPLETED.value,
            page_count=len(crawl.pages),
            error_count=len(crawl.errors),
            duration_seconds=crawl.crawl_duration,
            summary={"start_url": crawl.start_url, "skipped": crawl.skipped},
            created_at=crawl.crawled_at,
        )
        session_row.pages = [
            CrawledPageRecord(
                url=page.url,
                page_id=page.page_id,
                title=page.title,
                depth=page.depth,
                discovery_order=page.discovery_order,
            )
            for page in crawl.pages
        ]
        session_row.errors = _error_rows(crawl.errors)
        return await self._insert(session_row)

    async def record_capture_session(
        self,
        site_id: str,
        kind: SessionType,
        device: str,
        batch: CaptureBatch,
        artifact_keys: Mapping[str, str],
    ) -> str:
        """Persist a capture batch. ``artifact_keys`` maps page_id to stored key."""
        if kind not in (SessionType.BASELINE, SessionType.AFTER):
            raise StorageError(f"Capture sessions must be baseline or after, not {kind}")

        snapshots = []
        for position, result in enumerate(batch.results):
            snapshot = result.snapshot
            if snapshot is None:
                continue
            key = artifact_keys.get(result.page_id)
            if key is None:
                raise StorageError(f"No artifact key for page {result.page_id}")
            snapshots.append(
                SnapshotRecord(
                    site_id=site_id,
                    device=device,
                    kind=kind.value,
                    page_id=snapshot.page_id,
                    url=snapshot.url,
                    content_hash=snapshot.content_hash,
                    artifact_key=key,
                    width=snapshot.width,
                    height=snapshot.height,
                    image_format=snapshot.image_format.value,
                    size_bytes=snapshot.size_bytes,
                    load_time_ms=result.load_time_ms,
                    from_cache=result.from_cache,
                    position=position,
                    captured_at=snapshot.captured_at,
                )
            )

        session_row = RunSession(
            site_id=site_id,
            session_type=kind.value,
            device=device,
            status=(SessionStatus.ABORTED if batch.aborted else SessionStatus.COMPLETED).value,
            page_count=len(snapshots),
            error_count=batch.metrics.errors,
            duration_seconds=batch.metrics.total_time,
            summary={
                "metrics": batch.metrics.to_dict(),
                "failed_pages": [
                    {
                        "page_id": r.page_id,
                        "url": r.url,
                        "classification": r.classification.value if r.classification else None,
                        "error": r.error,
                    }
                    for r in batch.results
                    if r.snapshot is None
                ],
                "abort_reason": batch.abort_reason,
            },
        )
        session_row.snapshots = snapshots
        session_row.errors = _error_rows(batch.errors)
        return await self._insert(session_row)

    async def record_comparison_session(
        self,
        site_id: str,
        device: str,
        results: Sequence[ComparisonResult],
        threshold: float,
        errors: Iterable[ErrorRecord] = (),
        baseline_session_id: Optional[str] = None,
        after_session_id: Optional[str] = None,
        summary: Optional[dict[str, Any]] = None,
        aborted: bool = False,
    ) -> str:
        error_list = list(errors)
        session_row = RunSession(
            site_id=site_id,
            session_type=SessionType.COMPARE.value,
            device=device,
            status=(SessionStatus.ABORTED if aborted else SessionStatus.COMPLETED).value,
            page_count=len(results),
            error_count=len(error_list),
            threshold=threshold,
            summary=summary,
            baseline_session_id=baseline_session_id,
            after_session_id=after_session_id,
        )
        session_row.comparisons = [
            ComparisonRecord(
                page_id=r.page_id,
                url=r.url,
                status=r.status.value,
                diff_percentage=r.diff_percentage,
                diff_pixel_count=r.diff_pixel_count,
                threshold=r.threshold,
                phase=r.phase.value,
                classification=r.classification.value if r.classification else None,
                change_type=r.change_type.value if r.change_type else None,
                confidence=r.confidence,
                regions=[region.to_dict() for region in r.regions],
                baseline_ref=r.baseline_ref,
                after_ref=r.after_ref,
                diff_ref=r.diff_ref,
                message=r.message,
            )
            for r in results
        ]
        session_row.errors = _error_rows(error_list)
        return await self._insert(session_row)

    async def _insert(self, session_row: RunSession) -> str:
        async with self.db_manager.get_session() as session:
            session.add(session_row)
            await session.flush()
            session_id = session_row.id

        logger.info(
            "Session recorded",
            session_id=session_id,
            site_id=session_row.site_id,
            session_type=session_row.session_type,
            pages=session_row.page_count,
            errors=session_row.error_count,
        )
        return session_id

    # Reads

    async def get_session(self, session_id: str) -> Optional[RunSession]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(RunSession).where(RunSession.id == session_id)
            )
            return result.scalar_one_or_none()

    async def list_sessions(
        self,
        site_id: Optional[str] = None,
        session_type: Optional[SessionType] = None,
        limit: Optional[int] = 20,
    ) -> list[RunSession]:
        """Sessions newest first, optionally filtered."""
        async with self.db_manager.get_session() as session:
            query = select(RunSession)
            if site_id:
                query = query.where(RunSession.site_id == site_id)
            if session_type:
                query = query.where(RunSession.session_type == SessionType(session_type).value)
            query = query.order_by(desc(RunSession.created_at))
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_crawled_pages(self, session_id: str) -> list[CrawledPageRecord]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(CrawledPageRecord)
                .where(CrawledPageRecord.session_id == session_id)
                .order_by(CrawledPageRecord.discovery_order)
            )
            return list(result.scalars().all())

    async def get_comparisons(self, session_id: str) -> list[ComparisonRecord]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(ComparisonRecord)
                .where(ComparisonRecord.session_id == session_id)
                .order_by(ComparisonRecord.page_id)
            )
            return list(result.scalars().all())

    async def get_errors(self, session_id: str) -> list[ErrorRecordRow]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(ErrorRecordRow)
                .where(ErrorRecordRow.session_id == session_id)
                .order_by(ErrorRecordRow.occurred_at)
            )
            return list(result.scalars().all())

    async def latest_capture_session(
        self, site_id: str, device: str, kind: SessionType
    ) -> Optional[RunSession]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(RunSession)
                .where(
                    RunSession.site_id == site_id,
                    RunSession.device == device,
                    RunSession.session_type == SessionType(kind).value,
                )
                .order_by(desc(RunSession.created_at))
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def latest_snapshots(
        self, site_id: str, device: str, kind: SessionType
    ) -> list[SnapshotRecord]:
        """Snapshots of the most recent capture session of ``kind``."""
        latest = await self.latest_capture_session(site_id, device, kind)
        if latest is None:
            return []

        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(SnapshotRecord)
                .where(SnapshotRecord.session_id == latest.id)
                .order_by(SnapshotRecord.page_id)
            )
            return list(result.scalars().all())

    async def get_comparison_stats(
        self, site_id: Optional[str] = None, days: int = 30
    ) -> ComparisonStats:
        """Counts by status and mean diff percentage over the last ``days``."""
        since = datetime.utcnow() - timedelta(days=days)
        stats = ComparisonStats(site_id=site_id, days=days)

        async with self.db_manager.get_session() as session:
            filters = [
                RunSession.session_type == SessionType.COMPARE.value,
                RunSession.created_at >= since,
            ]
            if site_id:
                filters.append(RunSession.site_id == site_id)

            status_rows = await session.execute(
                select(ComparisonRecord.status, func.count(ComparisonRecord.id))
                .join(RunSession, ComparisonRecord.session_id == RunSession.id)
                .where(*filters)
                .group_by(ComparisonRecord.status)
            )
            for status, count in status_rows.all():
                stats.by_status[status] = int(count)
            stats.total = sum(stats.by_status.values())

            avg_row = await session.execute(
                select(func.avg(ComparisonRecord.diff_percentage))
                .join(RunSession, ComparisonRecord.session_id == RunSession.id)
                .where(*filters, ComparisonRecord.status.in_(("OK", "NG")))
            )
            average = avg_row.scalar()
            stats.average_diff_percentage = float(average) if average is not None else None

            session_count = await session.execute(
                select(func.count(RunSession.id)).where(*filters)
            )
            stats.sessions = int(session_count.scalar() or 0)

        return stats

    async def get_database_stats(self) -> dict[str, int]:
        info = await self.db_manager.get_table_info()
        return {name: data["row_count"] for name, data in info.items()}

    # Retention

    async def purge_older_than(
        self, days: int = 90, artifacts: Optional[ArtifactStore] = None
    ) -> int:
        """Delete sessions created before the horizon, with their children.

        With ``artifacts`` given, snapshot and diff files that only the purged
        rows referenced are deleted too. Keys are content-addressed, so a key
        still referenced by a surviving row is kept.

        Returns the number of sessions removed.
        """
        if days < 0:
            raise StorageError("Retention days cannot be negative")
        horizon = datetime.utcnow() - timedelta(days=days)

        async with self.db_manager.get_session() as session:
            old_ids = select(RunSession.id).where(RunSession.created_at < horizon)

            # Collect artifact keys before their rows go away
            candidates: set[str] = set()
            if artifacts is not None:
                for model, column in _ARTIFACT_COLUMNS:
                    rows = await session.execute(
                        select(column).where(
                            column.is_not(None), model.session_id.in_(old_ids)
                        )
                    )
                    candidates.update(rows.scalars().all())

            for model in (CrawledPageRecord, SnapshotRecord, ComparisonRecord, ErrorRecordRow):
                await session.execute(
                    delete(model)
                    .where(model.session_id.in_(old_ids))
                    .execution_options(synchronize_session=False)
                )
            result = await session.execute(
                delete(RunSession)
                .where(RunSession.created_at < horizon)
                .execution_options(synchronize_session=False)
            )
            removed = result.rowcount or 0

            # Keep keys that surviving rows still share
            if candidates:
                for _, column in _ARTIFACT_COLUMNS:
                    rows = await session.execute(
                        select(column).where(column.in_(sorted(candidates)))
                    )
                    candidates.difference_update(rows.scalars().all())

        deleted = 0
        for key in sorted(candidates):
            if await artifacts.delete(key):
                deleted += 1

        logger.info(
            "Purged old sessions", days=days, removed=removed, artifacts_deleted=deleted
        )
        return removed

    async def health_check(self) -> bool:
        return await self.db_manager.health_check()


def _error_rows(errors: Iterable[ErrorRecord]) -> list[ErrorRecordRow]:
    return [
        ErrorRecordRow(
            operation=e.operation,
            classification=e.classification.value,
            attempt=e.attempt,
            message=e.message,
            context=_jsonable(e.context),
            occurred_at=e.timestamp,
        )
        for e in errors
    ]


def _jsonable(context: Mapping[str, Any]) -> dict[str, Any]:
    return {
        k: v if isinstance(v, (str, int, float, bool, type(None))) else str(v)
        for k, v in context.items()
    }
