"""Per-principal fixed-window admission control.

State lives in an explicit RateLimitState object owned by the container
(created at startup, cleared at shutdown). A RateLimitSweeper prunes
windows of inactive principals in the background.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, Optional, Tuple

from core.config import Settings
from core.logging import get_logger

logger = get_logger(__name__)

OPERATION_SEND = "notification_send"
OPERATION_SEARCH = "search_query"


@dataclass
class RateLimitRule:
    max_requests: int
    window_seconds: float


@dataclass
class RateLimitWindow:
    count: int
    window_start: float
    last_seen: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: Optional[int] = None
    remaining: int = 0


class RateLimitState:
    """Working state of the limiter: one window per (principal, operation)."""

    def __init__(self):
        self.windows: Dict[Tuple[Hashable, str], RateLimitWindow] = {}

    @property
    def tracked_principals(self) -> int:
        return len({principal for principal, _ in self.windows})

    def clear(self) -> int:
        count = len(self.windows)
        self.windows.clear()
        return count


class RateLimiter:
    """Admission control for outbound calls per (principal, operation class)."""

    def __init__(self, state: RateLimitState, rules: Dict[str, RateLimitRule],
                 retention_seconds: float = 600, enabled: bool = True,
                 clock: Callable[[], float] = time.monotonic):
        self.state = state
        self.rules = rules
        self.retention_seconds = retention_seconds
        self.enabled = enabled
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, state: RateLimitState) -> "RateLimiter":
        rules = {
            OPERATION_SEND: RateLimitRule(settings.rate_limit_send_requests, settings.rate_limit_window),
            OPERATION_SEARCH: RateLimitRule(settings.rate_limit_search_requests, settings.rate_limit_window),
        }
        return cls(state, rules, retention_seconds=settings.rate_limit_retention,
                   enabled=settings.rate_limit_enabled)

    def _rule(self, operation_class: str) -> RateLimitRule:
        try:
            return self.rules[operation_class]
        except KeyError:
            raise ValueError(f"Unknown rate limit operation class: {operation_class}") from None

    def check_rate_limit(self, principal_id: Hashable, operation_class: str) -> RateLimitDecision:
        """Admit one request, or deny it with the time left in the window."""
        rule = self._rule(operation_class)
        if not self.enabled:
            return RateLimitDecision(allowed=True, remaining=rule.max_requests)

        now = self._clock()
        key = (principal_id, operation_class)
        window = self.state.windows.get(key)

        if window is None or now - window.window_start >= rule.window_seconds:
            self.state.windows[key] = RateLimitWindow(count=1, window_start=now, last_seen=now)
            return RateLimitDecision(allowed=True, remaining=rule.max_requests - 1)

        window.last_seen = now
        if window.count >= rule.max_requests:
            remaining_seconds = window.window_start + rule.window_seconds - now
            retry_after_ms = max(1, math.ceil(remaining_seconds * 1000))
            logger.warning("Rate limited", principal_id=principal_id,
                           operation=operation_class, count=window.count,
                           max_requests=rule.max_requests, retry_after_ms=retry_after_ms)
            return RateLimitDecision(allowed=False, retry_after_ms=retry_after_ms)

        window.count += 1
        return RateLimitDecision(allowed=True, remaining=rule.max_requests - window.count)

    def get_rate_limit_info(self, principal_id: Hashable, operation_class: str) -> Dict[str, object]:
        """Remaining budget without consuming a request."""
        rule = self._rule(operation_class)
        now = self._clock()
        window = self.state.windows.get((principal_id, operation_class))
        if window is None or now - window.window_start >= rule.window_seconds:
            return {"remaining": rule.max_requests, "reset_in_ms": 0, "limited": False}

        remaining = max(0, rule.max_requests - window.count)
        reset_in = window.window_start + rule.window_seconds - now
        return {
            "remaining": remaining,
            "reset_in_ms": max(0, math.ceil(reset_in * 1000)),
            "limited": remaining == 0,
        }

    def reset_rate_limit(self, principal_id: Hashable) -> int:
        """Drop every window of one principal."""
        keys = [key for key in self.state.windows if key[0] == principal_id]
        for key in keys:
            del self.state.windows[key]
        logger.debug("Rate limit reset", principal_id=principal_id, windows=len(keys))
        return len(keys)

    def sweep_expired(self) -> int:
        """Remove windows that have elapsed and seen no activity within retention."""
        now = self._clock()
        expired = []
        for key, window in self.state.windows.items():
            rule = self.rules.get(key[1])
            window_over = rule is None or now - window.window_start >= rule.window_seconds
            if window_over and now - window.last_seen >= self.retention_seconds:
                expired.append(key)

        for key in expired:
            del self.state.windows[key]

        if expired:
            logger.debug("Rate limit sweep", removed=len(expired), remaining=len(self.state.windows))
        return len(expired)


class RateLimitSweeper:
    """Background task that periodically calls RateLimiter.sweep_expired."""

    def __init__(self, limiter: RateLimiter, sweep_interval: float = 300):
        self.limiter = limiter
        self.sweep_interval = sweep_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Rate limit sweeper started", interval=self.sweep_interval,
                    retention=self.limiter.retention_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Rate limit sweeper stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.limiter.sweep_expired()
            except Exception as e:
                logger.error("Rate limit sweep failed", error=str(e))
