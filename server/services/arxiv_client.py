"""arXiv search provider.

Queries the arXiv Atom API with httpx and parses the feed with feedparser.
arXiv asks for no more than one request every three seconds, so all
requests from the process pass through a shared Throttle.
"""

import asyncio
import re
import time
from typing import Awaitable, Callable, List, Optional

import feedparser
import httpx

from core.config import Settings
from core.logging import get_logger, log_api_call
from models.papers import PaperSummary
from services.errors import ProviderError
from services.retry import RetryPolicy, with_retry

logger = get_logger(__name__)

PROVIDER_NAME = "arxiv"

_VERSION_SUFFIX_RE = re.compile(r"v\d+$")
_WHITESPACE_RE = re.compile(r"\s+")


class Throttle:
    """Enforces a minimum interval between requests by waiting."""

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_request: Optional[float] = None
        self._lock = asyncio.Lock()
        self._pending = 0

    @property
    def pending(self) -> int:
        return self._pending

    def wait_time(self) -> float:
        if self._last_request is None:
            return 0.0
        return max(0.0, self.min_interval - (self._clock() - self._last_request))

    def can_proceed(self) -> bool:
        return self.wait_time() == 0.0

    async def wait(self) -> None:
        self._pending += 1
        try:
            async with self._lock:
                delay = self.wait_time()
                if delay > 0:
                    logger.debug("Throttling request", wait_seconds=round(delay, 3),
                                 pending=self._pending)
                    await self._sleep(delay)
                self._last_request = self._clock()
        finally:
            self._pending -= 1


def build_search_query(topic: str, category: Optional[str] = None) -> str:
    topic = _WHITESPACE_RE.sub(" ", topic.strip())
    query = f'all:"{topic}"' if " " in topic else f"all:{topic}"
    if category:
        query = f"{query} AND cat:{category}"
    return query


def paper_id_from_entry_id(entry_id: str) -> str:
    """http://arxiv.org/abs/2101.00001v2 -> 2101.00001"""
    tail = entry_id.rsplit("/abs/", 1)[-1]
    return _VERSION_SUFFIX_RE.sub("", tail)


def parse_feed(text: str) -> List[PaperSummary]:
    """Parse an arXiv Atom response into PaperSummary values."""
    feed = feedparser.parse(text)
    if feed.bozo and not feed.entries:
        raise ProviderError(PROVIDER_NAME, f"Unparseable feed: {feed.get('bozo_exception')}")

    papers = []
    for entry in feed.entries:
        entry_id = entry.get("id", "")
        if "/api/errors" in entry_id:
            raise ProviderError(PROVIDER_NAME, _WHITESPACE_RE.sub(" ", entry.get("summary", "API error")).strip())
        if not entry_id:
            continue

        published = entry.get("published") or ""
        papers.append(PaperSummary(
            paper_id=paper_id_from_entry_id(entry_id),
            title=_WHITESPACE_RE.sub(" ", entry.get("title", "")).strip(),
            authors=[a.get("name", "") for a in entry.get("authors", []) if a.get("name")],
            summary=_WHITESPACE_RE.sub(" ", entry.get("summary", "")).strip(),
            link=entry.get("link") or entry_id,
            categories=[t.get("term") for t in entry.get("tags", []) if t.get("term")],
            published_date=published.split("T")[0] or None,
        ))
    return papers


class ArxivClient:
    """Paper search provider backed by the arXiv API."""

    def __init__(self, api_url: str, timeout: float = 30.0,
                 throttle: Optional[Throttle] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_url = api_url
        self.throttle = throttle or Throttle(3.0)
        self.retry_policy = retry_policy or RetryPolicy()
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ArxivClient":
        return cls(
            api_url=settings.arxiv_api_url,
            timeout=settings.arxiv_timeout,
            throttle=Throttle(settings.arxiv_min_interval),
            retry_policy=RetryPolicy(
                max_attempts=settings.arxiv_max_retries,
                initial_delay=settings.arxiv_retry_delay,
            ),
        )

    async def search(self, topic: str, category: Optional[str] = None,
                     offset: int = 0, limit: int = 10) -> List[PaperSummary]:
        """Newest papers for a topic. Raises ProviderError on network or parse failure."""
        params = {
            "search_query": build_search_query(topic, category),
            "start": offset,
            "max_results": limit,
            "sortBy": "submittedDate",
            "sortOrder": "descending",
        }

        async def fetch() -> str:
            await self.throttle.wait()
            response = await self._client.get(self.api_url, params=params)
            response.raise_for_status()
            return response.text

        start_time = time.time()
        try:
            text = await with_retry(fetch, self.retry_policy, operation="arxiv.search")
        except httpx.HTTPStatusError as e:
            log_api_call(logger, PROVIDER_NAME, "search", False, topic=topic,
                         status=e.response.status_code)
            raise ProviderError(PROVIDER_NAME, f"HTTP {e.response.status_code}",
                                status_code=e.response.status_code) from e
        except httpx.HTTPError as e:
            log_api_call(logger, PROVIDER_NAME, "search", False, topic=topic, error=str(e))
            raise ProviderError(PROVIDER_NAME, str(e) or type(e).__name__) from e

        papers = parse_feed(text)
        log_api_call(logger, PROVIDER_NAME, "search", True, topic=topic, category=category,
                     results=len(papers), duration_ms=int((time.time() - start_time) * 1000))
        return papers

    async def close(self) -> None:
        await self._client.aclose()
