"""TTL-bounded cache of paper search results.

Backed by a remote key/value store (see services.cache_store). The cache
is an optimization: every failure degrades to a miss or a no-op and is
never raised to the caller.
"""

import json
import re
import time
from typing import Callable, List, Optional, Dict, Any

from core.config import Settings
from core.logging import get_logger, log_cache_operation
from models.papers import PaperSummary
from services.cache_store import CommandStore, create_command_store, parse_cache_url

logger = get_logger(__name__)

DEFAULT_CACHE_TTL = 3600
SCAN_BATCH_SIZE = 100

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_topic(topic: str) -> str:
    """Lower-case, trim and collapse internal whitespace to '_'."""
    return _WHITESPACE_RE.sub("_", topic.strip().lower())


class ResultCache:
    """Search-result cache keyed by normalized topic, offset and limit.

    Constructed with store=None the cache is permanently disabled and every
    operation is a safe no-op.
    """

    def __init__(self, store: Optional[CommandStore], prefix: str = "papers",
                 ttl: int = DEFAULT_CACHE_TTL, clock: Callable[[], float] = time.time):
        self._store = store
        self.prefix = prefix
        self.ttl = ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings,
                      clock: Callable[[], float] = time.time) -> "ResultCache":
        """Parse the configured address first, then build enabled or disabled."""
        parsed = parse_cache_url(settings.redis_url)
        if not parsed.ok:
            if settings.redis_url:
                logger.warning("Cache configuration unusable, caching disabled", error=parsed.error)
            else:
                logger.info("No cache URL configured, caching disabled")
            return cls(None, prefix=settings.cache_prefix, ttl=settings.cache_ttl, clock=clock)

        store = create_command_store(parsed.endpoint, backend=settings.cache_backend,
                                     timeout=settings.cache_timeout)
        logger.info("Result cache initialized", backend=settings.cache_backend,
                    url=parsed.endpoint.rest_url, prefix=settings.cache_prefix, ttl=settings.cache_ttl)
        return cls(store, prefix=settings.cache_prefix, ttl=settings.cache_ttl, clock=clock)

    @property
    def enabled(self) -> bool:
        return self._store is not None

    def cache_key(self, topic: str, offset: int, limit: int, category: Optional[str] = None) -> str:
        parts = [self.prefix, normalize_topic(topic)]
        if category:
            parts.append(category.strip())
        parts.extend([str(offset), str(limit)])
        return ":".join(parts)

    async def get(self, topic: str, offset: int, limit: int,
                  category: Optional[str] = None) -> Optional[List[PaperSummary]]:
        """Cached papers, or None on miss, store error, bad payload or age > TTL."""
        if not self.enabled:
            return None

        key = self.cache_key(topic, offset, limit, category)
        try:
            response = await self._store.command("GET", key)
        except Exception as e:
            logger.error("Cache get failed", cache_key=key, error=str(e))
            return None

        if response.error or response.result is None:
            log_cache_operation(logger, "get", key, hit=False)
            return None

        try:
            cached = json.loads(response.result)
            cached_at = float(cached["cached_at"])
            papers = [PaperSummary.from_dict(item) for item in cached["papers"]]
        except (TypeError, ValueError, KeyError) as e:
            logger.warning("Malformed cache entry", cache_key=key, error=str(e))
            return None

        age = self._clock() - cached_at
        if age > self.ttl:
            log_cache_operation(logger, "get", key, hit=False, expired=True, age_seconds=round(age))
            return None

        log_cache_operation(logger, "get", key, hit=True, papers=len(papers), age_seconds=round(age))
        return papers

    async def set(self, topic: str, offset: int, limit: int, papers: List[PaperSummary],
                  category: Optional[str] = None) -> bool:
        """Best-effort write with an explicit store expiry equal to the TTL."""
        if not self.enabled:
            return False

        key = self.cache_key(topic, offset, limit, category)
        payload = json.dumps({
            "papers": [paper.to_dict() for paper in papers],
            "cached_at": self._clock(),
        })
        try:
            response = await self._store.command("SET", key, payload, "EX", str(self.ttl))
        except Exception as e:
            logger.error("Cache set failed", cache_key=key, error=str(e))
            return False

        if response.error:
            logger.error("Cache set failed", cache_key=key, error=response.error)
            return False

        log_cache_operation(logger, "set", key, papers=len(papers), ttl=self.ttl)
        return True

    async def invalidate(self, topic: str, offset: int, limit: int,
                         category: Optional[str] = None) -> bool:
        if not self.enabled:
            return False

        key = self.cache_key(topic, offset, limit, category)
        try:
            response = await self._store.command("DEL", key)
        except Exception as e:
            logger.error("Cache delete failed", cache_key=key, error=str(e))
            return False

        deleted = not response.error and response.result == 1
        log_cache_operation(logger, "delete", key, deleted=deleted)
        return deleted

    async def clear_all(self) -> int:
        """Scan-and-delete every key under the prefix.

        Stops when the store returns cursor 0; on a failed step returns the
        count deleted so far.
        """
        if not self.enabled:
            return 0

        pattern = f"{self.prefix}:*"
        cursor = "0"
        deleted_count = 0

        while True:
            try:
                scan = await self._store.command("SCAN", cursor, "MATCH", pattern,
                                                 "COUNT", str(SCAN_BATCH_SIZE))
                if scan.error or not scan.result:
                    break

                next_cursor, keys = scan.result
                cursor = str(next_cursor)

                if keys:
                    deleted = await self._store.command("DEL", *keys)
                    if deleted.error:
                        break
                    deleted_count += int(deleted.result or 0)
            except Exception as e:
                logger.error("Cache clear interrupted", deleted=deleted_count, error=str(e))
                break

            if cursor == "0":
                break

        logger.info("Result cache cleared", pattern=pattern, deleted=deleted_count)
        return deleted_count

    async def ping(self) -> bool:
        if not self.enabled:
            return False
        try:
            response = await self._store.command("PING")
        except Exception as e:
            logger.warning("Cache ping failed", error=str(e))
            return False
        return response.result == "PONG"

    async def stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "prefix": self.prefix,
            "ttl": self.ttl,
            "connected": await self.ping(),
        }

    async def close(self) -> None:
        if self._store is not None:
            await self._store.close()
            logger.info("Result cache connections closed")
