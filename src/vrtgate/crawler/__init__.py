"""Single-domain page discovery."""

from .crawler import PlaywrightPageFetcher, SiteCrawler
from .robots import AllowAllPolicy, RobotsPolicy
from .types import CrawledPage, CrawlError, CrawlResult, FetchedPage, PageFetcher
from .urls import (
    PageIdAllocator,
    UrlFilter,
    extract_links,
    is_same_site,
    normalize_url,
    page_id_for,
)

__all__ = [
    "SiteCrawler",
    "PlaywrightPageFetcher",
    "RobotsPolicy",
    "AllowAllPolicy",
    "CrawledPage",
    "CrawlResult",
    "CrawlError",
    "FetchedPage",
    "PageFetcher",
    "PageIdAllocator",
    "UrlFilter",
    "extract_links",
    "is_same_site",
    "normalize_url",
    "page_id_for",
]
