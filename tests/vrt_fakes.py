"""In-memory fakes and image builders shared by the test modules."""

import asyncio
import io
from typing import Optional

from PIL import Image

from src.vrtgate.capture import make_snapshot
from src.vrtgate.capture.types import WaitCondition
from src.vrtgate.crawler import FetchedPage
from src.vrtgate.resilience import NavigationError

WHITE = (255, 255, 255)
BLACK = (0, 0, 0)


def make_png(
    width: int = 64,
    height: int = 48,
    background: tuple[int, int, int] = WHITE,
    blocks: tuple = (),
) -> bytes:
    """PNG bytes of a flat background with solid rectangles (x, y, w, h, color)."""
    img = Image.new("RGB", (width, height), background)
    for x, y, w, h, color in blocks:
        img.paste(color, (x, y, x + w, y + h))
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def make_snapshot_for(page_id: str, data: bytes, url: Optional[str] = None):
    return make_snapshot(page_id, url or f"https://example.com/{page_id}", data)


class FakeFetcher:
    """PageFetcher over an in-memory link graph.

    ``pages`` maps URL to a list of outgoing links; ``failures`` maps URL to
    the exception every fetch of it raises.
    """

    def __init__(self, pages: dict, failures: Optional[dict] = None, robots: Optional[str] = None):
        self.pages = pages
        self.failures = failures or {}
        self.robots = robots
        self.fetched: list[str] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def fetch(self, url: str) -> FetchedPage:
        self.fetched.append(url)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if url in self.failures:
                raise self.failures[url]
            if url not in self.pages:
                raise NavigationError(f"HTTP 404 for {url}", url=url)
            return FetchedPage(url=url, title=url.rsplit("/", 1)[-1], links=tuple(self.pages[url]))
        finally:
            self.in_flight -= 1

    async def fetch_text(self, url: str) -> Optional[str]:
        if url.endswith("/robots.txt"):
            return self.robots
        return None


class FakeRenderSession:
    """RenderSession that returns canned rasters per URL."""

    def __init__(self, rasters: dict, failures: Optional[dict] = None, delay: float = 0.0):
        self.rasters = rasters
        self.failures = failures or {}
        self.delay = delay
        self.current: Optional[str] = None
        self.busy = False
        self.opened: list[str] = []
        self.closed = False

    async def open(self, url: str, viewport: dict) -> None:
        assert not self.busy, "session used by two captures at once"
        self.busy = True
        try:
            self.opened.append(url)
            await asyncio.sleep(self.delay)
            failure = self.failures.get(url)
            if failure is not None:
                raise failure
            self.current = url
        finally:
            self.busy = False

    async def wait_for(self, condition: WaitCondition) -> None:
        await asyncio.sleep(0)

    async def capture_raster(self, full_page: bool = True) -> bytes:
        return self.rasters[self.current]

    async def title(self) -> str:
        return self.current or ""

    async def links(self) -> list:
        return []

    async def fetch_text(self, url: str) -> Optional[str]:
        return None

    async def close(self) -> None:
        self.closed = True


def session_factory(rasters: dict, failures: Optional[dict] = None, delay: float = 0.0):
    created: list[FakeRenderSession] = []

    async def factory() -> FakeRenderSession:
        session = FakeRenderSession(rasters, failures, delay)
        created.append(session)
        return session

    factory.created = created
    return factory


async def no_sleep(delay: float) -> None:
    return None
