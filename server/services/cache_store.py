"""Command transports for the result cache backing store.

The cache speaks a small Redis command set (GET, SET ... EX, DEL, SCAN,
PING). Two transports implement it:

- RestCommandStore: JSON command arrays POSTed to an HTTPS endpoint with a
  bearer token (Upstash-style REST), replies are {"result": ..., "error": ...}
- RedisCommandStore: native Redis protocol via redis.asyncio

Address parsing is a separate, pure step (parse_cache_url) so the cache is
constructed enabled or disabled from its result, never half-built.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol
from urllib.parse import urlsplit

import httpx
import redis.asyncio as redis

from core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CacheEndpoint:
    """Reachable endpoint plus credential for the backing store."""
    rest_url: str
    token: str
    redis_url: str


@dataclass(frozen=True)
class EndpointParseResult:
    endpoint: Optional[CacheEndpoint] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.endpoint is not None


@dataclass
class StoreResponse:
    result: Any = None
    error: Optional[str] = None


def parse_cache_url(url: Optional[str]) -> EndpointParseResult:
    """Turn a redis://, rediss:// or https:// URL into an endpoint.

    The password component is the credential; without one the address is
    unusable.
    """
    if not url or not url.strip():
        return EndpointParseResult(error="No cache URL configured")

    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
        token = parts.password
        port = parts.port
    except ValueError as e:
        return EndpointParseResult(error=f"Invalid cache URL: {e}")

    if parts.scheme not in ("redis", "rediss", "https"):
        return EndpointParseResult(error=f"Unsupported cache URL scheme: {parts.scheme!r}")
    if not hostname:
        return EndpointParseResult(error="Cache URL has no host")
    if not token:
        return EndpointParseResult(error="No token found in cache URL")

    if parts.scheme == "https":
        redis_url = f"rediss://default:{token}@{hostname}:{port or 6379}"
    else:
        redis_url = url.strip()

    return EndpointParseResult(endpoint=CacheEndpoint(
        rest_url=f"https://{hostname}",
        token=token,
        redis_url=redis_url,
    ))


class CommandStore(Protocol):
    """Request/response command transport."""

    async def command(self, *args: str) -> StoreResponse:
        ...

    async def close(self) -> None:
        ...


class RestCommandStore:
    """Command transport over HTTPS (one POST per command)."""

    def __init__(self, endpoint: CacheEndpoint, timeout: float = 5.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def command(self, *args: str) -> StoreResponse:
        try:
            response = await self._client.post(
                self.endpoint.rest_url,
                headers={"Authorization": f"Bearer {self.endpoint.token}"},
                json=list(args),
            )
        except httpx.HTTPError as e:
            logger.error("Cache store request error", command=args[0], error=str(e))
            return StoreResponse(error=str(e))

        if response.status_code >= 400:
            logger.error("Cache store request failed", command=args[0],
                         status=response.status_code, body=response.text[:200])
            return StoreResponse(error=response.text or f"HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            return StoreResponse(error="Malformed store response")
        if not isinstance(payload, dict):
            return StoreResponse(error="Malformed store response")
        return StoreResponse(result=payload.get("result"), error=payload.get("error"))

    async def close(self) -> None:
        await self._client.aclose()


class RedisCommandStore:
    """Command transport over the native Redis protocol."""

    def __init__(self, endpoint: CacheEndpoint, timeout: float = 5.0,
                 client: Optional["redis.Redis"] = None):
        self.endpoint = endpoint
        self._client = client or redis.from_url(
            endpoint.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            retry_on_timeout=True
        )

    async def command(self, *args: str) -> StoreResponse:
        try:
            result = await self._client.execute_command(*args)
        except redis.RedisError as e:
            logger.error("Cache store command error", command=args[0], error=str(e))
            return StoreResponse(error=str(e))

        # redis-py parses some replies (PING -> True, SCAN -> (int, list))
        if args[0].upper() == "PING" and result is True:
            result = "PONG"
        elif args[0].upper() == "SCAN" and isinstance(result, (list, tuple)):
            cursor, keys = result
            result = [str(cursor), list(keys)]
        elif args[0].upper() == "SET" and result is True:
            result = "OK"
        return StoreResponse(result=result)

    async def close(self) -> None:
        await self._client.aclose()


def create_command_store(endpoint: CacheEndpoint, backend: str = "rest",
                         timeout: float = 5.0) -> CommandStore:
    """Factory for the configured transport."""
    if backend == "redis":
        return RedisCommandStore(endpoint, timeout=timeout)
    return RestCommandStore(endpoint, timeout=timeout)
