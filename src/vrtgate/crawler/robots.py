"""robots.txt policy, fetched once per host."""

import asyncio
from typing import Optional
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

from ..utils.logging import get_structured_logger
from .types import TextFetcher

logger = get_structured_logger(__name__)


class RobotsPolicy:
    """Answers whether a URL may be crawled.

    A missing or unreadable robots.txt allows everything.
    """

    def __init__(self, fetcher: TextFetcher, user_agent: str = "*"):
        self.fetcher = fetcher
        self.user_agent = user_agent
        self._parsers: dict[str, Optional[RobotFileParser]] = {}
        self._lock = asyncio.Lock()

    async def _parser_for(self, url: str) -> Optional[RobotFileParser]:
        parts = urlsplit(url)
        origin = f"{parts.scheme}://{parts.netloc}"

        async with self._lock:
            if origin in self._parsers:
                return self._parsers[origin]

            robots_url = f"{origin}/robots.txt"
            parser: Optional[RobotFileParser] = None
            try:
                text = await self.fetcher.fetch_text(robots_url)
            except Exception as e:
                logger.debug("robots.txt unavailable", url=robots_url, error=str(e))
                text = None

            if text:
                parser = RobotFileParser(robots_url)
                parser.parse(text.splitlines())
                logger.debug("Loaded robots.txt", url=robots_url)

            self._parsers[origin] = parser
            return parser

    async def allowed(self, url: str) -> bool:
        parser = await self._parser_for(url)
        if parser is None:
            return True
        return parser.can_fetch(self.user_agent, url)


class AllowAllPolicy:
    async def allowed(self, url: str) -> bool:
        return True
