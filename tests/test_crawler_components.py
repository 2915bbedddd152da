"""Tests for site discovery: BFS crawl, URL identity, scoping and page ids."""

import pytest

from src.vrtgate.config import CrawlSettings, SiteConfig
from src.vrtgate.crawler import (
    CrawlError,
    PageIdAllocator,
    RobotsPolicy,
    SiteCrawler,
    UrlFilter,
    extract_links,
    is_same_site,
    normalize_url,
    page_id_for,
)
from src.vrtgate.crawler.urls import MAX_SLUG_LENGTH
from src.vrtgate.resilience import ErrorClassification, NavigationError, NetworkError
from vrt_fakes import FakeFetcher

ROOT = "https://example.com"


def chain(length: int) -> dict:
    """Linear site: / -> /p1 -> /p2 -> ... -> /p{length}."""
    urls = [ROOT] + [f"{ROOT}/p{i}" for i in range(1, length + 1)]
    pages = {url: [nxt] for url, nxt in zip(urls, urls[1:])}
    pages[urls[-1]] = []
    return pages


class TestUrlNormalization:
    """URL identity used by the visited set."""

    def test_trailing_slash_query_order_and_fragment_collapse(self):
        variants = [
            "https://example.com/shop?b=2&a=1",
            "https://example.com/shop/?a=1&b=2",
            "https://example.com/shop?a=1&b=2#reviews",
            "HTTPS://EXAMPLE.com:443/shop/?b=2&a=1",
        ]

        assert {normalize_url(v) for v in variants} == {"https://example.com/shop?a=1&b=2"}

    def test_path_case_is_preserved(self):
        assert normalize_url("https://Example.com/About/") == "https://example.com/About"

    def test_non_default_port_is_kept(self):
        assert normalize_url("http://example.com:8080/") == "http://example.com:8080"

    def test_unparseable_input_is_returned_stripped(self):
        assert normalize_url("  mailto:someone@example.com ") == "mailto:someone@example.com"

    def test_www_is_same_site(self):
        assert is_same_site("https://www.example.com/news", "example.com")
        assert is_same_site("https://example.com/news", "www.example.com")
        assert not is_same_site("https://blog.example.org/", "example.com")
        assert not is_same_site("mailto:someone@example.com", "example.com")


class TestUrlFilter:
    def test_default_exclusions(self):
        url_filter = UrlFilter()

        for url in [
            "https://example.com/wp-admin/options.php",
            "https://example.com/wp-login.php",
            "https://example.com/admin",
            "https://example.com/login/",
            "https://example.com?action=logout",
            "https://example.com/post?preview=true",
            "https://example.com/files/report.pdf",
            "https://example.com/img/logo.PNG",
            "mailto:someone@example.com",
            "tel:+15550100",
            "javascript:void(0)",
        ]:
            assert url_filter.is_excluded(url), url

    def test_regular_pages_are_kept(self):
        url_filter = UrlFilter()

        assert not url_filter.is_excluded("https://example.com/administration-guide")
        assert not url_filter.is_excluded("https://example.com/blog/login-tips")
        assert not url_filter.is_excluded("https://example.com/about")

    def test_site_patterns_extend_defaults(self):
        url_filter = UrlFilter([r"/cart(/|$)"])

        assert url_filter.is_excluded("https://example.com/cart")
        assert url_filter.is_excluded("https://example.com/wp-admin")


class TestPageIds:
    def test_root_is_top(self):
        assert page_id_for("https://example.com/") == "top"
        assert page_id_for("https://example.com") == "top"

    def test_path_slug(self):
        assert page_id_for("https://example.com/About/Team/") == "about-team"
        assert page_id_for("https://example.com/blog/2024/hello_world") == "blog-2024-hello-world"

    def test_stable_across_equivalent_urls(self):
        assert page_id_for("https://example.com/a?y=2&x=1") == page_id_for(
            "https://example.com/a/?x=1&y=2#frag"
        )

    def test_query_adds_hash_suffix(self):
        plain = page_id_for("https://example.com/search")
        first = page_id_for("https://example.com/search?q=shoes")
        second = page_id_for("https://example.com/search?q=hats")

        assert plain == "search"
        assert first.startswith("search-")
        assert first != second

    def test_long_slug_is_truncated_with_hash(self):
        url = "https://example.com/" + "/".join(["segment"] * 20)
        page_id = page_id_for(url)

        assert len(page_id) <= MAX_SLUG_LENGTH + 9
        assert page_id == page_id_for(url)

    def test_allocator_disambiguates_collisions(self):
        allocator = PageIdAllocator()

        first = allocator.allocate("https://example.com/about-us")
        second = allocator.allocate("https://example.com/about_us")

        assert first == "about-us"
        assert second.startswith("about-us-")
        assert allocator.allocate("https://example.com/about-us/") == first


class TestLinkExtraction:
    def test_extract_links_resolves_relative_hrefs(self):
        html = """
        <html><body>
            <a href="/about">About</a>
            <a href="contact">Contact</a>
            <a href="#section">Jump</a>
            <a href="https://other.example.org/x">Elsewhere</a>
            <a>No href</a>
        </body></html>
        """

        links = extract_links(html, "https://example.com/company/")

        assert links == [
            "https://example.com/about",
            "https://example.com/company/contact",
            "https://other.example.org/x",
        ]


class TestSiteCrawler:
    """Breadth-first crawl over an in-memory site."""

    @pytest.fixture
    def three_page_site(self):
        return {
            ROOT: [f"{ROOT}/about", f"{ROOT}/contact/", f"{ROOT}/#top"],
            f"{ROOT}/about": [f"{ROOT}/", f"{ROOT}/contact"],
            f"{ROOT}/contact": [f"{ROOT}/about?"],
        }

    @pytest.mark.asyncio
    async def test_three_page_site_returns_exactly_three_urls(
        self, site, three_page_site, retry_executor
    ):
        fetcher = FakeFetcher(three_page_site)
        crawler = SiteCrawler(site, fetcher, executor=retry_executor)

        result = await crawler.crawl(max_pages=10)

        assert result.urls == [ROOT, f"{ROOT}/about", f"{ROOT}/contact"]
        assert [p.page_id for p in result.pages] == ["top", "about", "contact"]
        assert [p.discovery_order for p in result.pages] == [0, 1, 2]
        assert result.skipped == 0
        assert sorted(fetcher.fetched) == sorted(result.urls)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_pages", [1, 3, 7])
    async def test_max_pages_caps_result(self, site, retry_executor, max_pages):
        pages = {ROOT: [f"{ROOT}/p{i}" for i in range(20)]}
        pages.update({f"{ROOT}/p{i}": [] for i in range(20)})
        crawler = SiteCrawler(site, FakeFetcher(pages), executor=retry_executor)

        result = await crawler.crawl(max_pages=max_pages)

        assert len(result.pages) == max_pages

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_depth", [0, 1, 3])
    async def test_max_depth_bounds_hops(self, site, retry_executor, max_depth):
        crawler = SiteCrawler(site, FakeFetcher(chain(6)), executor=retry_executor)

        result = await crawler.crawl(max_pages=50, max_depth=max_depth)

        assert len(result.pages) == max_depth + 1
        assert all(page.depth <= max_depth for page in result.pages)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limits", [{"max_pages": 0}, {"max_depth": -1}])
    async def test_invalid_limits_are_rejected(self, site, retry_executor, limits):
        crawler = SiteCrawler(site, FakeFetcher({ROOT: []}), executor=retry_executor)

        with pytest.raises(CrawlError):
            await crawler.crawl(**limits)

    @pytest.mark.asyncio
    async def test_equivalent_urls_are_fetched_once(self, site, retry_executor):
        shop = f"{ROOT}/shop?a=1&b=2"
        pages = {
            ROOT: [f"{ROOT}/shop?b=2&a=1", f"{ROOT}/shop/?a=1&b=2", f"{ROOT}/shop?a=1&b=2#top"],
            shop: [f"{ROOT}/?", ROOT + "/"],
        }
        fetcher = FakeFetcher(pages)
        crawler = SiteCrawler(site, fetcher, executor=retry_executor)

        result = await crawler.crawl()

        assert result.urls == [ROOT, shop]
        assert fetcher.fetched.count(shop) == 1
        assert fetcher.fetched.count(ROOT) == 1

    @pytest.mark.asyncio
    async def test_excluded_and_offsite_links_are_not_fetched(self, retry_executor):
        site = SiteConfig(
            id="example", start_url=ROOT, exclude_patterns=(r"/cart(/|$)",)
        )
        pages = {
            ROOT: [
                f"{ROOT}/wp-admin/",
                f"{ROOT}/login",
                f"{ROOT}/brochure.pdf",
                f"{ROOT}?action=logout",
                "mailto:info@example.com",
                "https://other.example.org/page",
                f"{ROOT}/cart",
                "https://www.example.com/news",
            ],
            "https://www.example.com/news": [],
        }
        fetcher = FakeFetcher(pages)
        crawler = SiteCrawler(site, fetcher, executor=retry_executor)

        result = await crawler.crawl()

        assert result.urls == [ROOT, "https://www.example.com/news"]
        assert fetcher.fetched == [ROOT, "https://www.example.com/news"]

    @pytest.mark.asyncio
    async def test_failed_page_is_skipped_not_fatal(self, site, retry_executor):
        pages = {ROOT: [f"{ROOT}/broken", f"{ROOT}/ok"], f"{ROOT}/ok": []}
        fetcher = FakeFetcher(
            pages, failures={f"{ROOT}/broken": NavigationError("HTTP 500", url=f"{ROOT}/broken")}
        )
        crawler = SiteCrawler(site, fetcher, executor=retry_executor)

        result = await crawler.crawl()

        assert result.urls == [ROOT, f"{ROOT}/ok"]
        assert result.skipped == 1
        assert len(result.errors) == 1
        assert result.errors[0].classification == ErrorClassification.NAVIGATION
        assert result.errors[0].context["url"] == f"{ROOT}/broken"

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, site, retry_executor):
        pages = {ROOT: [f"{ROOT}/flaky"], f"{ROOT}/flaky": []}
        fetcher = FakeFetcher(pages, failures={f"{ROOT}/flaky": NetworkError("reset")})
        crawler = SiteCrawler(site, fetcher, executor=retry_executor)

        result = await crawler.crawl()

        assert result.urls == [ROOT]
        assert fetcher.fetched.count(f"{ROOT}/flaky") == 3
        assert [e.attempt for e in result.errors] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_unreachable_start_url_gives_empty_result(self, site, retry_executor):
        fetcher = FakeFetcher({}, failures={ROOT: NavigationError("HTTP 404")})
        crawler = SiteCrawler(site, fetcher, executor=retry_executor)

        result = await crawler.crawl()

        assert result.pages == []
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_fetch_concurrency_is_bounded(self, site, retry_executor):
        pages = {ROOT: [f"{ROOT}/p{i}" for i in range(12)]}
        pages.update({f"{ROOT}/p{i}": [] for i in range(12)})
        fetcher = FakeFetcher(pages)
        crawler = SiteCrawler(
            site, fetcher, settings=CrawlSettings(concurrency=3), executor=retry_executor
        )

        result = await crawler.crawl(max_pages=13)

        assert len(result.pages) == 13
        assert fetcher.peak_in_flight <= 3
        assert result.urls[1:] == [f"{ROOT}/p{i}" for i in range(12)]

    @pytest.mark.asyncio
    async def test_robots_disallow_is_honored(self, site, retry_executor):
        pages = {ROOT: [f"{ROOT}/private/area", f"{ROOT}/public"], f"{ROOT}/public": []}
        fetcher = FakeFetcher(pages, robots="User-agent: *\nDisallow: /private\n")
        crawler = SiteCrawler(
            site, fetcher, executor=retry_executor, robots=RobotsPolicy(fetcher)
        )

        result = await crawler.crawl()

        assert result.urls == [ROOT, f"{ROOT}/public"]

    @pytest.mark.asyncio
    async def test_missing_robots_allows_everything(self):
        policy = RobotsPolicy(FakeFetcher({}, robots=None))

        assert await policy.allowed(f"{ROOT}/anything")
