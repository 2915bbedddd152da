"""Playwright render sessions and the pool that leases them."""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..config.settings import CaptureSettings
from ..crawler.urls import extract_links
from ..resilience.types import (
    NavigationError,
    NetworkError,
    RenderTimeoutError,
    ResourceExhaustedError,
    VRTError,
)
from ..utils.async_utils import AsyncContextManager
from ..utils.logging import get_structured_logger
from .types import RenderSession, WaitCondition

logger = get_structured_logger(__name__)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--no-zygote",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--hide-scrollbars",
    "--mute-audio",
]

DISABLE_ANIMATIONS_SCRIPT = """
(() => {
    const css = `*, *::before, *::after {
        animation-duration: 0s !important;
        animation-delay: 0s !important;
        transition-duration: 0s !important;
        transition-delay: 0s !important;
        caret-color: transparent !important;
    }`;
    const install = () => {
        const style = document.createElement('style');
        style.setAttribute('data-vrtgate', 'freeze');
        style.textContent = css;
        (document.head || document.documentElement).appendChild(style);
    };
    if (document.readyState === 'loading') {
        document.addEventListener('DOMContentLoaded', install);
    } else {
        install();
    }
})();
"""

_MEMORY_MARKERS = ("out of memory", "page crashed", "target crashed")


def translate_playwright_error(error: Exception, url: str) -> VRTError:
    """Turn a Playwright failure into a classified pipeline error."""
    message = str(error).splitlines()[0] if str(error) else type(error).__name__
    if isinstance(error, PlaywrightTimeoutError):
        return RenderTimeoutError(message, url=url)

    lowered = message.lower()
    if any(marker in lowered for marker in _MEMORY_MARKERS):
        return ResourceExhaustedError(message, url=url)
    if "net::err" in lowered:
        return NetworkError(message, url=url)
    return NavigationError(message, url=url)


class PlaywrightRenderSession:
    """One browser with a single long-lived context and page."""

    def __init__(
        self,
        browser: Browser,
        settings: Optional[CaptureSettings] = None,
        user_agent: Optional[str] = None,
    ):
        self.browser = browser
        self.settings = settings or CaptureSettings()
        self.user_agent = user_agent
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self._viewport: Optional[dict[str, int]] = None

    async def setup(self, viewport: Optional[dict[str, int]] = None) -> None:
        self._viewport = viewport or {"width": 1920, "height": 1080}
        options = {
            "viewport": self._viewport,
            "java_script_enabled": True,
            "extra_http_headers": {"Accept-Language": "en-US,en;q=0.9"},
        }
        if self.user_agent:
            options["user_agent"] = self.user_agent

        self.context = await self.browser.new_context(**options)
        if self.settings.disable_animations:
            await self.context.add_init_script(DISABLE_ANIMATIONS_SCRIPT)
        if self.settings.block_resources:
            await self.context.route("**/*", self._route)

        self.page = await self.context.new_page()
        self.page.set_default_timeout(self.settings.navigation_timeout_ms)
        self.page.set_default_navigation_timeout(self.settings.navigation_timeout_ms)

    async def _route(self, route) -> None:
        request = route.request
        if request.resource_type in self.settings.blocked_resource_types or any(
            domain in request.url for domain in self.settings.blocked_domains
        ):
            await route.abort()
        else:
            await route.continue_()

    async def open(self, url: str, viewport: dict[str, int]) -> None:
        if self.page is None:
            await self.setup(viewport)

        try:
            if viewport != self._viewport:
                await self.page.set_viewport_size(viewport)
                self._viewport = dict(viewport)

            response = await self.page.goto(url, wait_until="domcontentloaded")
        except (PlaywrightTimeoutError, PlaywrightError) as e:
            raise translate_playwright_error(e, url) from e

        if response is not None and response.status >= 400:
            raise NavigationError(f"HTTP {response.status} for {url}", url=url)

    async def wait_for(self, condition: WaitCondition) -> None:
        if condition.selector:
            try:
                await self.page.wait_for_selector(
                    condition.selector, timeout=condition.timeout_ms
                )
                return
            except PlaywrightTimeoutError:
                logger.debug(
                    "Wait selector not found, settling instead",
                    selector=condition.selector,
                )
        if condition.settle_ms > 0:
            await asyncio.sleep(condition.settle_ms / 1000.0)

    async def capture_raster(self, full_page: bool = True) -> bytes:
        try:
            return await self.page.screenshot(type="png", full_page=full_page)
        except (PlaywrightTimeoutError, PlaywrightError) as e:
            raise translate_playwright_error(e, self.page.url) from e

    async def title(self) -> str:
        try:
            return await self.page.title()
        except PlaywrightError as e:
            raise translate_playwright_error(e, self.page.url) from e

    async def links(self) -> list[str]:
        try:
            html = await self.page.content()
        except PlaywrightError as e:
            raise translate_playwright_error(e, self.page.url) from e
        return extract_links(html, self.page.url)

    async def fetch_text(self, url: str) -> Optional[str]:
        """GET ``url`` outside the page; None for non-2xx responses."""
        if self.context is None:
            await self.setup()
        try:
            response = await self.context.request.get(url)
        except PlaywrightError as e:
            raise translate_playwright_error(e, url) from e
        if not response.ok:
            return None
        return await response.text()

    async def close(self) -> None:
        if self.context is not None:
            await self.context.close()
            self.context = None
            self.page = None
        await self.browser.close()


class PlaywrightSessionFactory(AsyncContextManager):
    """Starts Playwright once and launches one Chromium per session."""

    def __init__(
        self, settings: Optional[CaptureSettings] = None, user_agent: Optional[str] = None
    ):
        self.settings = settings or CaptureSettings()
        self.user_agent = user_agent
        self.playwright: Optional[Playwright] = None
        self._lock = asyncio.Lock()

    async def setup(self) -> None:
        async with self._lock:
            if self.playwright is None:
                logger.info("Starting Playwright")
                self.playwright = await async_playwright().start()

    async def cleanup(self) -> None:
        async with self._lock:
            if self.playwright is not None:
                await self.playwright.stop()
                self.playwright = None
                logger.info("Playwright stopped")

    async def __call__(self) -> PlaywrightRenderSession:
        if self.playwright is None:
            await self.setup()
        browser = await self.playwright.chromium.launch(headless=True, args=LAUNCH_ARGS)
        session = PlaywrightRenderSession(browser, self.settings, self.user_agent)
        await session.setup()
        return session


SessionFactory = Callable[[], Awaitable[RenderSession]]


class RenderSessionPool:
    """Fixed set of render sessions handed out round-robin.

    Sessions wait in a FIFO queue; a lease takes the head and returns it to
    the tail, so a session is never held by two callers at once.
    """

    def __init__(self, factory: SessionFactory, size: int = 5):
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self.factory = factory
        self.size = size
        self.sessions: list[RenderSession] = []
        self.available: asyncio.Queue = asyncio.Queue()
        self.lease_count = 0
        self._initialized = False
        self._lock = asyncio.Lock()

    async def setup(self) -> None:
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            logger.info("Initializing render session pool", size=self.size)
            for _ in range(self.size):
                session = await self.factory()
                self.sessions.append(session)
                self.available.put_nowait(session)

            self._initialized = True

    async def cleanup(self) -> None:
        async with self._lock:
            for session in self.sessions:
                try:
                    await session.close()
                except Exception as e:
                    logger.warning("Failed to close render session", error=str(e))

            self.sessions.clear()
            while not self.available.empty():
                self.available.get_nowait()

            self._initialized = False
            logger.info("Render session pool closed")

    async def __aenter__(self) -> "RenderSessionPool":
        await self.setup()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.cleanup()

    @asynccontextmanager
    async def lease(self):
        if not self._initialized:
            await self.setup()

        session = await self.available.get()
        self.lease_count += 1
        try:
            yield session
        finally:
            self.available.put_nowait(session)
