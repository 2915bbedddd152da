"""Type definitions for the crawler module."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

from ..resilience.types import ErrorRecord


class CrawlError(Exception):
    """Base exception for crawl-related errors."""

    pass


@dataclass(frozen=True)
class CrawledPage:
    """A page discovered by the crawler."""

    url: str
    page_id: str
    title: str
    depth: int
    discovery_order: int

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "page_id": self.page_id,
            "title": self.title,
            "depth": self.depth,
            "discovery_order": self.discovery_order,
        }


@dataclass(frozen=True)
class FetchedPage:
    """What a fetcher reports back for one URL."""

    url: str
    title: str = ""
    links: tuple[str, ...] = ()


@dataclass
class CrawlResult:
    """Ordered result of crawling one site."""

    site_id: str
    start_url: str
    pages: list[CrawledPage]
    errors: list[ErrorRecord] = field(default_factory=list)
    skipped: int = 0
    crawl_duration: float = 0.0
    crawled_at: datetime = None

    def __post_init__(self):
        if self.crawled_at is None:
            self.crawled_at = datetime.utcnow()

    @property
    def urls(self) -> list[str]:
        return [page.url for page in self.pages]

    def find(self, page_id: str) -> Optional[CrawledPage]:
        for page in self.pages:
            if page.page_id == page_id:
                return page
        return None


class PageFetcher(Protocol):
    """Loads a URL and returns its title and outgoing links."""

    async def fetch(self, url: str) -> FetchedPage:
        ...


class TextFetcher(Protocol):
    async def fetch_text(self, url: str) -> Optional[str]:
        ...
