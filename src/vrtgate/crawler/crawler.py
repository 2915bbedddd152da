"""Breadth-first, single-domain site crawler."""

import asyncio
import time
from collections import deque
from typing import Optional

from ..config.settings import CrawlSettings, SiteConfig
from ..config.types import DEVICE_VIEWPORTS
from ..resilience import ErrorRecord, RetryExecutor
from ..utils.logging import get_structured_logger
from .robots import AllowAllPolicy, RobotsPolicy
from .types import CrawledPage, CrawlError, CrawlResult, FetchedPage, PageFetcher
from .urls import PageIdAllocator, UrlFilter, is_same_site, normalize_url

logger = get_structured_logger(__name__)


class SiteCrawler:
    """Discovers the pages of one site.

    The frontier is drained in FIFO order in batches of at most
    ``concurrency`` fetches. Results of a batch are merged in the order the
    URLs left the frontier, so the returned order is the BFS order no
    matter which fetch finishes first.
    """

    def __init__(
        self,
        site: SiteConfig,
        fetcher: PageFetcher,
        settings: Optional[CrawlSettings] = None,
        executor: Optional[RetryExecutor] = None,
        robots: Optional[RobotsPolicy] = None,
    ):
        self.site = site
        self.fetcher = fetcher
        self.settings = settings or CrawlSettings()
        self.executor = executor or RetryExecutor()
        self.robots = robots or AllowAllPolicy()
        self.url_filter = UrlFilter(
            [*self.settings.exclude_patterns, *site.exclude_patterns],
            include_defaults=False,
        )

    async def crawl(
        self,
        max_pages: Optional[int] = None,
        max_depth: Optional[int] = None,
    ) -> CrawlResult:
        max_pages = max_pages if max_pages is not None else self.site.max_pages
        max_depth = max_depth if max_depth is not None else self.site.max_depth
        if max_pages < 1:
            raise CrawlError(f"max_pages must be at least 1, got {max_pages}")
        if max_depth < 0:
            raise CrawlError(f"max_depth cannot be negative, got {max_depth}")
        concurrency = self.settings.concurrency
        domain = self.site.domain

        start_time = time.time()
        start_url = normalize_url(self.site.start_url)
        frontier: deque[tuple[str, int]] = deque([(start_url, 0)])
        seen: set[str] = {start_url}
        allocator = PageIdAllocator()
        pages: list[CrawledPage] = []
        errors: list[ErrorRecord] = []
        skipped = 0

        logger.info(
            "Starting crawl",
            site_id=self.site.id,
            start_url=start_url,
            max_pages=max_pages,
            max_depth=max_depth,
        )

        while frontier and len(pages) < max_pages:
            batch_size = min(concurrency, max_pages - len(pages))
            batch = [frontier.popleft() for _ in range(min(batch_size, len(frontier)))]

            outcomes = await asyncio.gather(
                *(self._fetch(url, depth) for url, depth in batch)
            )

            for (url, depth), outcome in zip(batch, outcomes):
                errors.extend(outcome.errors)
                if not outcome.ok:
                    skipped += 1
                    continue

                fetched: FetchedPage = outcome.value
                page_id = allocator.allocate(url)
                pages.append(
                    CrawledPage(
                        url=url,
                        page_id=page_id,
                        title=fetched.title or page_id,
                        depth=depth,
                        discovery_order=len(pages),
                    )
                )

                if depth >= max_depth:
                    continue

                for link in fetched.links:
                    candidate = normalize_url(link)
                    if candidate in seen:
                        continue
                    seen.add(candidate)
                    if not is_same_site(candidate, domain):
                        continue
                    if self.url_filter.is_excluded(candidate):
                        logger.debug("Excluded URL", url=candidate)
                        continue
                    if not await self.robots.allowed(candidate):
                        logger.debug("Disallowed by robots.txt", url=candidate)
                        continue
                    frontier.append((candidate, depth + 1))

        duration = time.time() - start_time
        logger.info(
            "Crawl completed",
            site_id=self.site.id,
            pages=len(pages),
            failed=skipped,
            duration=round(duration, 3),
        )

        return CrawlResult(
            site_id=self.site.id,
            start_url=start_url,
            pages=pages,
            errors=errors,
            skipped=skipped,
            crawl_duration=duration,
        )

    async def _fetch(self, url: str, depth: int):
        return await self.executor.run(
            lambda: self.fetcher.fetch(url),
            "crawl.fetch",
            {"site_id": self.site.id, "url": url, "depth": depth},
        )


class PlaywrightPageFetcher:
    """PageFetcher that renders each URL in a leased render session."""

    def __init__(self, session_pool, device: str = "desktop"):
        self.session_pool = session_pool
        self.viewport = DEVICE_VIEWPORTS[device]

    async def fetch(self, url: str) -> FetchedPage:
        async with self.session_pool.lease() as session:
            await session.open(url, self.viewport)
            title = await session.title()
            links = await session.links()
        return FetchedPage(url=url, title=title, links=tuple(links))

    async def fetch_text(self, url: str) -> Optional[str]:
        async with self.session_pool.lease() as session:
            return await session.fetch_text(url)
