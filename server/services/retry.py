"""Retry with exponential backoff for outbound calls."""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


@dataclass
class RetryPolicy:
    """Retry configuration.

    Delay formula: min(initial_delay * (backoff_multiplier ^ attempt) + 10% jitter, max_delay)
    """
    max_attempts: int = 3
    initial_delay: float = 1.0       # seconds
    max_delay: float = 10.0          # seconds
    backoff_multiplier: float = 2.0
    jitter: float = 0.1

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the next attempt (attempt is 0-indexed)."""
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        delay += random.random() * self.jitter * delay
        return min(delay, self.max_delay)


def is_retryable_error(error: BaseException) -> bool:
    """Network errors, timeouts and retryable HTTP statuses."""
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True
    status_code = getattr(error, "status_code", None)
    if status_code is None and isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
    return status_code in RETRYABLE_STATUS_CODES


async def with_retry(fn: Callable[[], Awaitable[T]], policy: RetryPolicy,
                     operation: str = "operation",
                     is_retryable: Callable[[BaseException], bool] = is_retryable_error,
                     sleep: Optional[Callable[[float], Awaitable[None]]] = None) -> T:
    """Run fn, retrying retryable failures; re-raises the last error."""
    sleep = sleep or asyncio.sleep
    for attempt in range(policy.max_attempts):
        try:
            return await fn()
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt + 1 >= policy.max_attempts:
                logger.warning("All attempts failed", operation=operation,
                               attempts=policy.max_attempts, error=str(e))
                raise
            delay = policy.calculate_delay(attempt)
            logger.debug("Attempt failed, retrying", operation=operation,
                         attempt=attempt + 1, delay=round(delay, 2), error=str(e))
            await sleep(delay)
    raise RuntimeError("with_retry called with max_attempts < 1")
