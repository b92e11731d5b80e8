import asyncio

import pytest

from core.config import Settings
from helpers import FakeClock
from services.rate_limiter import (
    OPERATION_SEARCH,
    OPERATION_SEND,
    RateLimiter,
    RateLimitRule,
    RateLimitState,
    RateLimitSweeper,
)


def make_limiter(clock, max_requests=3, window=60, retention=600, enabled=True):
    rules = {
        OPERATION_SEND: RateLimitRule(max_requests, window),
        OPERATION_SEARCH: RateLimitRule(max_requests * 2, window),
    }
    return RateLimiter(RateLimitState(), rules, retention_seconds=retention,
                       enabled=enabled, clock=clock)


def test_denies_request_over_limit_until_window_elapses():
    clock = FakeClock()
    limiter = make_limiter(clock)

    decisions = [limiter.check_rate_limit(7, OPERATION_SEND) for _ in range(3)]
    assert all(d.allowed for d in decisions)
    assert [d.remaining for d in decisions] == [2, 1, 0]

    clock.advance(20)
    denied = limiter.check_rate_limit(7, OPERATION_SEND)
    assert denied.allowed is False
    assert denied.retry_after_ms == 40000

    clock.advance(40)
    assert limiter.check_rate_limit(7, OPERATION_SEND).allowed is True


def test_retry_after_is_at_least_one_ms():
    clock = FakeClock()
    limiter = make_limiter(clock, max_requests=1)
    limiter.check_rate_limit(1, OPERATION_SEND)

    clock.advance(59.99999)
    assert limiter.check_rate_limit(1, OPERATION_SEND).retry_after_ms >= 1


def test_principals_and_operations_are_independent():
    clock = FakeClock()
    limiter = make_limiter(clock, max_requests=1)

    assert limiter.check_rate_limit(1, OPERATION_SEND).allowed
    assert not limiter.check_rate_limit(1, OPERATION_SEND).allowed
    assert limiter.check_rate_limit(2, OPERATION_SEND).allowed
    assert limiter.check_rate_limit(1, OPERATION_SEARCH).allowed


def test_unknown_operation_class():
    limiter = make_limiter(FakeClock())
    with pytest.raises(ValueError):
        limiter.check_rate_limit(1, "bulk_export")


def test_disabled_limiter_always_allows():
    limiter = make_limiter(FakeClock(), max_requests=1, enabled=False)
    assert all(limiter.check_rate_limit(1, OPERATION_SEND).allowed for _ in range(5))
    assert limiter.state.windows == {}


def test_rate_limit_info_does_not_consume():
    clock = FakeClock()
    limiter = make_limiter(clock, max_requests=2)
    limiter.check_rate_limit(1, OPERATION_SEND)

    info = limiter.get_rate_limit_info(1, OPERATION_SEND)
    assert info == {"remaining": 1, "reset_in_ms": 60000, "limited": False}
    assert limiter.get_rate_limit_info(1, OPERATION_SEND)["remaining"] == 1


def test_reset_rate_limit():
    clock = FakeClock()
    limiter = make_limiter(clock, max_requests=1)
    limiter.check_rate_limit(1, OPERATION_SEND)
    limiter.check_rate_limit(1, OPERATION_SEARCH)
    limiter.check_rate_limit(2, OPERATION_SEND)

    assert limiter.reset_rate_limit(1) == 2
    assert limiter.check_rate_limit(1, OPERATION_SEND).allowed
    assert limiter.state.tracked_principals == 2


def test_sweep_removes_only_idle_expired_windows():
    clock = FakeClock()
    limiter = make_limiter(clock, retention=600)
    limiter.check_rate_limit("idle", OPERATION_SEND)
    clock.advance(300)
    limiter.check_rate_limit("active", OPERATION_SEND)
    clock.advance(301)

    assert limiter.sweep_expired() == 1
    assert list(limiter.state.windows) == [("active", OPERATION_SEND)]


def test_from_settings_uses_configured_rules(tmp_path):
    settings = Settings(_env_file=None, rate_limit_send_requests=5, rate_limit_window=30,
                        database_url=f"sqlite+aiosqlite:///{tmp_path / 'x.db'}")
    limiter = RateLimiter.from_settings(settings, RateLimitState())

    assert limiter.rules[OPERATION_SEND] == RateLimitRule(5, 30)
    assert limiter.retention_seconds == settings.rate_limit_retention


def test_state_clear():
    limiter = make_limiter(FakeClock())
    limiter.check_rate_limit(1, OPERATION_SEND)
    assert limiter.state.clear() == 1
    assert limiter.state.windows == {}


async def test_sweeper_runs_in_background():
    clock = FakeClock()
    limiter = make_limiter(clock, retention=1)
    limiter.check_rate_limit(1, OPERATION_SEND)
    clock.advance(120)
    sweeper = RateLimitSweeper(limiter, sweep_interval=0.01)

    await sweeper.start()
    assert sweeper.running
    await asyncio.sleep(0.05)
    await sweeper.stop()

    assert not sweeper.running
    assert limiter.state.windows == {}
