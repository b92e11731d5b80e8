import pytest

from core.config import Settings
from core.database import Database
from helpers import FakeClock, FakeNotifier, FakeProvider
from services.rate_limiter import RateLimiter, RateLimitRule, RateLimitState, OPERATION_SEARCH, OPERATION_SEND
from services.result_cache import ResultCache
from services.subscription_worker import SubscriptionWorker
from services.view_ledger import ViewLedger


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        redis_url=None,
        cron_secret=None,
        telegram_bot_token=None,
        worker_concurrency=2,
        worker_subscription_timeout=5.0,
        worker_results_per_subscription=10,
        log_format="console",
    )


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def ledger(database):
    return ViewLedger(database)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    rules = {
        OPERATION_SEND: RateLimitRule(max_requests=20, window_seconds=60),
        OPERATION_SEARCH: RateLimitRule(max_requests=30, window_seconds=60),
    }
    return RateLimiter(RateLimitState(), rules, retention_seconds=600, clock=clock)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def worker(database, ledger, limiter, provider, notifier, settings):
    return SubscriptionWorker(
        database=database,
        cache=ResultCache(None),
        ledger=ledger,
        limiter=limiter,
        provider=provider,
        notifier=notifier,
        settings=settings,
    )
