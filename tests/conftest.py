"""Test configuration and fixtures for the vrtgate test suite."""

from typing import Optional

import pytest
import pytest_asyncio

from src.vrtgate.capture import CapturePool, CaptureTarget, RenderSessionPool
from src.vrtgate.config import (
    AppSettings,
    CaptureSettings,
    DatabaseSettings,
    RetrySettings,
    SiteConfig,
    StorageSettings,
)
from src.vrtgate.resilience import RetryExecutor
from src.vrtgate.storage import LocalArtifactStore, SessionStore
from vrt_fakes import no_sleep, session_factory


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


@pytest.fixture
def retry_executor():
    """Retry executor that never actually waits."""
    return RetryExecutor(max_retries=3, base_delay=1.0, sleep=no_sleep)


@pytest.fixture
def capture_settings():
    return CaptureSettings(
        max_concurrency=4,
        session_pool_size=2,
        settle_ms=0,
        cache_max_entries=10,
        cache_ttl_seconds=60,
    )


@pytest.fixture
def make_capture_pool(capture_settings, retry_executor):
    def build(rasters: dict, failures: Optional[dict] = None, delay: float = 0.0, settings=None):
        settings = settings or capture_settings
        factory = session_factory(rasters, failures, delay)
        sessions = RenderSessionPool(factory, size=settings.session_pool_size)
        pool = CapturePool(sessions, settings, executor=retry_executor)
        pool.factory = factory
        return pool

    return build


@pytest.fixture
def targets():
    return [
        CaptureTarget(url=f"https://example.com/page{i}", page_id=f"page{i}")
        for i in range(6)
    ]


@pytest.fixture
def site():
    return SiteConfig(id="example", start_url="https://example.com", max_pages=10, max_depth=3)


@pytest.fixture
def app_settings(tmp_path, site):
    return AppSettings(
        database=DatabaseSettings(url="sqlite:///:memory:"),
        capture=CaptureSettings(
            max_concurrency=4, session_pool_size=2, settle_ms=0, cache_ttl_seconds=60
        ),
        retry=RetrySettings(max_retries=2, base_delay=0.01),
        storage=StorageSettings(artifacts_dir=str(tmp_path / "artifacts")),
        sites=[site],
    )


@pytest_asyncio.fixture
async def session_store():
    """Session store over a fresh in-memory SQLite database."""
    store = SessionStore(DatabaseSettings(url="sqlite:///:memory:"))
    await store.setup()
    yield store
    await store.cleanup()


@pytest.fixture
def artifact_store(tmp_path):
    return LocalArtifactStore(str(tmp_path / "artifacts"))
