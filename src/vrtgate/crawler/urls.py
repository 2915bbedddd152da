"""URL normalization, scoping, exclusion and page identifiers."""

import hashlib
import re
from collections.abc import Iterable
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup

from ..config.settings import DEFAULT_EXCLUDE_PATTERNS

MAX_SLUG_LENGTH = 60
HASH_SUFFIX_LENGTH = 8

_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """Canonical form used for visited-set checks.

    Scheme and host are lowercased, the default port and the fragment are
    dropped, trailing slashes are removed from the path and query
    parameters are sorted. Unparseable input is returned stripped.
    """
    url = url.strip()
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return url

    if not parts.scheme or not parts.netloc:
        return url

    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    netloc = host
    if port and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"

    path = parts.path.rstrip("/")
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))

    return urlunsplit((scheme, netloc, path, query, ""))


def apex_host(host: str) -> str:
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def is_same_site(url: str, domain: str) -> bool:
    """True when ``url`` lives on ``domain`` with or without ``www.``."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return False
    return apex_host(parts.hostname) == apex_host(domain)


class UrlFilter:
    """Exclusion rules applied before a URL is queued."""

    def __init__(self, extra_patterns: Iterable[str] = (), include_defaults: bool = True):
        patterns = list(DEFAULT_EXCLUDE_PATTERNS) if include_defaults else []
        patterns.extend(extra_patterns)
        self.patterns = [re.compile(p, re.IGNORECASE) for p in patterns]

    def is_excluded(self, url: str) -> bool:
        return any(pattern.search(url) for pattern in self.patterns)


def extract_links(html: str, base_url: str) -> list[str]:
    """Absolute hrefs of every anchor in ``html``, in document order."""
    soup = BeautifulSoup(html, "html.parser")
    links = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if href and not href.startswith("#"):
            links.append(urljoin(base_url, href))
    return links


def _short_hash(url: str) -> str:
    return hashlib.blake2b(url.encode("utf-8"), digest_size=8).hexdigest()[
        :HASH_SUFFIX_LENGTH
    ]


def page_id_for(url: str) -> str:
    """Stable, filesystem-safe identifier derived from the URL path.

    ``https://example.com/`` gives ``top``; ``/about/team`` gives
    ``about-team``. A hash of the normalized URL is appended when the slug
    is truncated or the URL carries a query string, so distinct URLs do
    not collapse onto one id.
    """
    normalized = normalize_url(url)
    parts = urlsplit(normalized)
    slug = re.sub(r"[^a-zA-Z0-9]", "-", parts.path.strip("/")).lower()
    slug = re.sub(r"-{2,}", "-", slug).strip("-") or "top"

    needs_hash = bool(parts.query)
    if len(slug) > MAX_SLUG_LENGTH:
        slug = slug[:MAX_SLUG_LENGTH].rstrip("-")
        needs_hash = True

    if needs_hash:
        slug = f"{slug}-{_short_hash(normalized)}"
    return slug


class PageIdAllocator:
    """Hands out page ids, disambiguating slugs that collide within a crawl."""

    def __init__(self):
        self._by_url: dict[str, str] = {}
        self._used: set[str] = set()

    def allocate(self, url: str) -> str:
        normalized = normalize_url(url)
        existing: Optional[str] = self._by_url.get(normalized)
        if existing:
            return existing

        page_id = page_id_for(normalized)
        if page_id in self._used:
            page_id = f"{page_id}-{_short_hash(normalized)}"

        self._by_url[normalized] = page_id
        self._used.add(page_id)
        return page_id
