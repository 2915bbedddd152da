"""Tests for session storage and the artifact store."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from src.vrtgate.capture import CaptureBatch, CaptureMetrics, CaptureResult
from src.vrtgate.crawler import CrawledPage, CrawlResult
from src.vrtgate.diff import (
    BoundingBox,
    ComparisonPhase,
    ComparisonResult,
    ComparisonStatus,
    Region,
    RegionKind,
)
from src.vrtgate.resilience import ErrorClassification, ErrorRecord
from src.vrtgate.storage import (
    ArtifactNotFoundError,
    RunSession,
    SessionStatus,
    SessionType,
    SnapshotRecord,
    StorageError,
    artifact_key,
)
from vrt_fakes import BLACK, make_png, make_snapshot_for

SITE = "example"
DEVICE = "desktop"


def crawl_result(crawled_at=None, pages=("top", "about")) -> CrawlResult:
    return CrawlResult(
        site_id=SITE,
        start_url="https://example.com",
        pages=[
            CrawledPage(
                url=f"https://example.com/{page_id}",
                page_id=page_id,
                title=page_id.title(),
                depth=min(i, 1),
                discovery_order=i,
            )
            for i, page_id in enumerate(pages)
        ],
        errors=[
            ErrorRecord(
                operation="crawl.fetch",
                classification=ErrorClassification.NAVIGATION,
                attempt=1,
                message="HTTP 404",
                context={"url": "https://example.com/gone"},
            )
        ],
        skipped=1,
        crawl_duration=1.5,
        crawled_at=crawled_at,
    )


def capture_batch(page_ids=("top", "about"), failed=("broken",), aborted=False) -> CaptureBatch:
    results = [
        CaptureResult(
            url=f"https://example.com/{page_id}",
            page_id=page_id,
            snapshot=make_snapshot_for(page_id, make_png(blocks=((i, i, 4, 4, BLACK),))),
            load_time_ms=120.0,
        )
        for i, page_id in enumerate(page_ids)
    ]
    for page_id in failed:
        record = ErrorRecord(
            operation="capture.page",
            classification=ErrorClassification.NAVIGATION,
            attempt=1,
            message="HTTP 500",
            context={"page_id": page_id},
        )
        results.append(
            CaptureResult(
                url=f"https://example.com/{page_id}",
                page_id=page_id,
                error=record.message,
                classification=record.classification,
                errors=[record],
            )
        )
    metrics = CaptureMetrics(
        total=len(results), captured=len(page_ids), errors=len(failed), total_time=0.8
    )
    return CaptureBatch(results=results, metrics=metrics, aborted=aborted)


def keys_for(batch: CaptureBatch, kind: str = "baseline") -> dict:
    return {
        r.page_id: artifact_key(SITE, DEVICE, kind, r.snapshot)
        for r in batch.results
        if r.snapshot is not None
    }


def comparison(page_id: str, status: ComparisonStatus, diff: float = 0.0, **extra):
    return ComparisonResult(
        page_id=page_id,
        url=f"https://example.com/{page_id}",
        status=status,
        threshold=2.0,
        diff_percentage=diff,
        **extra,
    )


class TestSessionWrites:
    @pytest.mark.asyncio
    async def test_record_crawl_session(self, session_store):
        session_id = await session_store.record_crawl_session(crawl_result(), device=DEVICE)

        row = await session_store.get_session(session_id)
        pages = await session_store.get_crawled_pages(session_id)
        errors = await session_store.get_errors(session_id)

        assert row.session_type == SessionType.CRAWL.value
        assert row.page_count == 2
        assert row.error_count == 1
        assert row.summary == {"start_url": "https://example.com", "skipped": 1}
        assert [p.page_id for p in pages] == ["top", "about"]
        assert errors[0].classification == "NAVIGATION"
        assert errors[0].context == {"url": "https://example.com/gone"}

    @pytest.mark.asyncio
    async def test_record_capture_session(self, session_store):
        batch = capture_batch()

        session_id = await session_store.record_capture_session(
            SITE, SessionType.BASELINE, DEVICE, batch, keys_for(batch)
        )

        row = await session_store.get_session(session_id)
        snapshots = await session_store.latest_snapshots(SITE, DEVICE, SessionType.BASELINE)

        assert row.status == SessionStatus.COMPLETED.value
        assert row.page_count == 2
        assert row.error_count == 1
        assert row.summary["failed_pages"][0]["page_id"] == "broken"
        assert row.summary["metrics"]["captured"] == 2
        assert [s.page_id for s in snapshots] == ["about", "top"]
        assert {s.position for s in snapshots} == {0, 1}
        assert all(s.artifact_key.startswith("example/desktop/baseline/") for s in snapshots)
        assert all(s.image_format == "png" for s in snapshots)

    @pytest.mark.asyncio
    async def test_aborted_capture_is_marked(self, session_store):
        batch = capture_batch(aborted=True)

        session_id = await session_store.record_capture_session(
            SITE, SessionType.AFTER, DEVICE, batch, keys_for(batch, "after")
        )

        row = await session_store.get_session(session_id)
        assert row.status == SessionStatus.ABORTED.value

    @pytest.mark.asyncio
    async def test_capture_session_requires_keys_and_kind(self, session_store):
        batch = capture_batch(failed=())

        with pytest.raises(StorageError):
            await session_store.record_capture_session(
                SITE, SessionType.BASELINE, DEVICE, batch, {}
            )
        with pytest.raises(StorageError):
            await session_store.record_capture_session(
                SITE, SessionType.COMPARE, DEVICE, batch, keys_for(batch)
            )

    @pytest.mark.asyncio
    async def test_record_comparison_session(self, session_store):
        region = Region(BoundingBox(0, 0, 200, 100), 20000, RegionKind.LAYOUT)
        results = [
            comparison("top", ComparisonStatus.OK, 0.4, phase=ComparisonPhase.PIXEL),
            comparison(
                "about",
                ComparisonStatus.NG,
                7.7,
                phase=ComparisonPhase.SEMANTIC,
                regions=(region,),
                change_type=RegionKind.LAYOUT,
            ),
            comparison(
                "contact",
                ComparisonStatus.SKIP,
                classification=ErrorClassification.MISSING_BASELINE,
            ),
        ]

        session_id = await session_store.record_comparison_session(
            SITE,
            DEVICE,
            results,
            threshold=2.0,
            baseline_session_id="b-1",
            after_session_id="a-1",
            summary={"OK": 1, "NG": 1, "SKIP": 1},
        )

        row = await session_store.get_session(session_id)
        records = await session_store.get_comparisons(session_id)
        by_page = {r.page_id: r for r in records}

        assert row.threshold == 2.0
        assert row.baseline_session_id == "b-1"
        assert row.after_session_id == "a-1"
        assert by_page["about"].status == "NG"
        assert by_page["about"].regions[0]["classification"] == "layout"
        assert by_page["about"].change_type == "layout"
        assert by_page["contact"].classification == "MISSING_BASELINE"
        assert by_page["top"].phase == "pixel"


class TestSessionReads:
    @pytest.mark.asyncio
    async def test_list_sessions_newest_first_with_filters(self, session_store):
        now = datetime.utcnow()
        older = await session_store.record_crawl_session(crawl_result(now - timedelta(hours=2)))
        newer = await session_store.record_crawl_session(crawl_result(now - timedelta(hours=1)))
        batch = capture_batch(failed=())
        capture_id = await session_store.record_capture_session(
            SITE, SessionType.BASELINE, DEVICE, batch, keys_for(batch)
        )

        everything = await session_store.list_sessions()
        crawls = await session_store.list_sessions(session_type=SessionType.CRAWL)
        limited = await session_store.list_sessions(limit=1)
        other_site = await session_store.list_sessions(site_id="other")

        assert [s.id for s in everything] == [capture_id, newer, older]
        assert [s.id for s in crawls] == [newer, older]
        assert [s.id for s in limited] == [capture_id]
        assert other_site == []

    @pytest.mark.asyncio
    async def test_latest_snapshots_uses_newest_session(self, session_store):
        first = capture_batch(page_ids=("top",), failed=())
        second = capture_batch(page_ids=("top", "about"), failed=())
        await session_store.record_capture_session(
            SITE, SessionType.BASELINE, DEVICE, first, keys_for(first)
        )
        second_id = await session_store.record_capture_session(
            SITE, SessionType.BASELINE, DEVICE, second, keys_for(second)
        )

        snapshots = await session_store.latest_snapshots(SITE, DEVICE, SessionType.BASELINE)

        assert {s.session_id for s in snapshots} == {second_id}
        assert len(snapshots) == 2

    @pytest.mark.asyncio
    async def test_latest_snapshots_empty_without_sessions(self, session_store):
        assert await session_store.latest_snapshots(SITE, DEVICE, SessionType.AFTER) == []
        assert await session_store.latest_snapshots(SITE, "mobile", SessionType.BASELINE) == []

    @pytest.mark.asyncio
    async def test_get_session_unknown_id(self, session_store):
        assert await session_store.get_session("does-not-exist") is None

    @pytest.mark.asyncio
    async def test_comparison_stats_average_excludes_skips(self, session_store):
        await session_store.record_comparison_session(
            SITE,
            DEVICE,
            [
                comparison("top", ComparisonStatus.OK, 1.0),
                comparison("about", ComparisonStatus.NG, 5.0),
                comparison("contact", ComparisonStatus.SKIP, 0.0),
            ],
            threshold=2.0,
        )
        await session_store.record_comparison_session(
            "other", DEVICE, [comparison("top", ComparisonStatus.NG, 50.0)], threshold=2.0
        )

        stats = await session_store.get_comparison_stats(site_id=SITE, days=30)
        overall = await session_store.get_comparison_stats(days=30)

        assert stats.total == 3
        assert stats.by_status == {"OK": 1, "NG": 1, "SKIP": 1}
        assert stats.average_diff_percentage == pytest.approx(3.0)
        assert stats.sessions == 1
        assert overall.total == 4
        assert overall.sessions == 2

    @pytest.mark.asyncio
    async def test_comparison_stats_empty(self, session_store):
        stats = await session_store.get_comparison_stats(site_id=SITE)

        assert stats.total == 0
        assert stats.average_diff_percentage is None
        assert stats.to_dict()["by_status"] == {}

    @pytest.mark.asyncio
    async def test_database_stats_and_health(self, session_store):
        await session_store.record_crawl_session(crawl_result())

        counts = await session_store.get_database_stats()

        assert counts["run_sessions"] == 1
        assert counts["crawled_pages"] == 2
        assert counts["error_records"] == 1
        assert await session_store.health_check()


class TestRetention:
    @pytest.mark.asyncio
    async def test_purge_removes_old_sessions_and_children(self, session_store):
        old_id = await session_store.record_crawl_session(
            crawl_result(datetime.utcnow() - timedelta(days=200))
        )
        recent_id = await session_store.record_crawl_session(crawl_result())

        removed = await session_store.purge_older_than(days=90)

        assert removed == 1
        assert await session_store.get_session(old_id) is None
        assert await session_store.get_crawled_pages(old_id) == []
        assert await session_store.get_errors(old_id) == []
        assert await session_store.get_session(recent_id) is not None
        assert len(await session_store.get_crawled_pages(recent_id)) == 2

    @pytest.mark.asyncio
    async def test_purge_deletes_unshared_artifacts(self, session_store, artifact_store):
        old_batch = capture_batch(page_ids=("top", "about"), failed=())
        old_keys = keys_for(old_batch)
        recent_batch = capture_batch(page_ids=("top",), failed=())
        recent_keys = keys_for(recent_batch)
        assert recent_keys["top"] == old_keys["top"]
        for result in old_batch.results:
            await artifact_store.put(old_keys[result.page_id], result.snapshot.image_bytes)
        diff_ref = "example/desktop/diff/about-0123456789ab.png"
        await artifact_store.put(diff_ref, make_png())

        old_capture = await session_store.record_capture_session(
            SITE, SessionType.BASELINE, DEVICE, old_batch, old_keys
        )
        old_compare = await session_store.record_comparison_session(
            SITE,
            DEVICE,
            [comparison("about", ComparisonStatus.NG, 7.7, diff_ref=diff_ref)],
            threshold=2.0,
        )
        await session_store.record_capture_session(
            SITE, SessionType.BASELINE, DEVICE, recent_batch, recent_keys
        )
        async with session_store.db_manager.get_session() as session:
            await session.execute(
                update(RunSession)
                .where(RunSession.id.in_([old_capture, old_compare]))
                .values(created_at=datetime.utcnow() - timedelta(days=200))
            )

        removed = await session_store.purge_older_than(days=90, artifacts=artifact_store)

        assert removed == 2
        assert not await artifact_store.exists(old_keys["about"])
        assert not await artifact_store.exists(diff_ref)
        assert await artifact_store.exists(old_keys["top"])

    @pytest.mark.asyncio
    async def test_purge_without_artifact_store_keeps_files(self, session_store, artifact_store):
        batch = capture_batch(page_ids=("top",), failed=())
        keys = keys_for(batch)
        await artifact_store.put(keys["top"], batch.results[0].snapshot.image_bytes)
        session_id = await session_store.record_capture_session(
            SITE, SessionType.BASELINE, DEVICE, batch, keys
        )
        async with session_store.db_manager.get_session() as session:
            await session.execute(
                update(RunSession)
                .where(RunSession.id == session_id)
                .values(created_at=datetime.utcnow() - timedelta(days=200))
            )

        assert await session_store.purge_older_than(days=90) == 1
        assert await artifact_store.exists(keys["top"])

    @pytest.mark.asyncio
    async def test_purge_rejects_negative_days(self, session_store):
        with pytest.raises(StorageError):
            await session_store.purge_older_than(days=-1)


class TestArtifactStore:
    @pytest.mark.asyncio
    async def test_put_and_get(self, artifact_store):
        snapshot = make_snapshot_for("home", make_png())
        key = artifact_key(SITE, DEVICE, "baseline", snapshot)

        stored = await artifact_store.put(key, snapshot.image_bytes)

        assert stored == key
        assert await artifact_store.exists(key)
        assert await artifact_store.get(key) == snapshot.image_bytes

    @pytest.mark.asyncio
    async def test_missing_artifact(self, artifact_store):
        with pytest.raises(ArtifactNotFoundError):
            await artifact_store.get("example/desktop/baseline/nope.png")

    @pytest.mark.asyncio
    async def test_delete(self, artifact_store):
        await artifact_store.put("a/b.png", b"data")

        assert await artifact_store.delete("a/b.png")
        assert not await artifact_store.delete("a/b.png")

    @pytest.mark.asyncio
    async def test_keys_cannot_escape_root(self, artifact_store):
        with pytest.raises(StorageError):
            await artifact_store.put("../outside.png", b"data")

    def test_artifact_key_is_content_addressed_and_safe(self):
        snapshot = make_snapshot_for("blog/post", make_png())
        key = artifact_key("my site", DEVICE, "after", snapshot)

        assert key == f"my-site/desktop/after/blog-post-{snapshot.content_hash[:12]}.png"


class TestModels:
    def test_reprs(self):
        session = RunSession(id="s-1", site_id=SITE, session_type="crawl")
        snapshot = SnapshotRecord(page_id="top", kind="baseline", device=DEVICE)

        assert "s-1" in repr(session)
        assert "crawl" in repr(session)
        assert "page_id=top" in repr(snapshot)
        assert dict(session.__rich_repr__())["site_id"] == SITE
