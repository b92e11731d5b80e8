import httpx
import pytest
from dependency_injector import providers
from fastapi import FastAPI

from core.container import container
from core.health import get_health_status
from helpers import FakeClock, add_subscription, hours_ago, make_paper
from routers import admin, cron
from services.arxiv_client import ArxivClient, Throttle
from services.errors import PersistenceError
from services.metrics import MetricsStore
from services.rate_limiter import OPERATION_SEND, RateLimitState, RateLimitSweeper
from services.result_cache import ResultCache


@pytest.fixture
def app(settings, database, worker, limiter):
    application = FastAPI()
    application.include_router(cron.router)
    application.include_router(admin.router)

    container.settings.override(providers.Object(settings))
    container.database.override(providers.Object(database))
    container.subscription_worker.override(providers.Object(worker))
    container.rate_limiter.override(providers.Object(limiter))
    container.result_cache.override(providers.Object(ResultCache(None)))
    yield application
    container.reset_override()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def test_cron_trigger_runs_batch(client, database, provider, notifier):
    await add_subscription(database, 100, "robotics")
    provider.results["robotics"] = [make_paper("2401.0001")]

    response = await client.post("/api/cron/subscriptions")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["processed"] == 1
    assert body["papersDelivered"] == 1
    assert "timestamp" in body
    assert len(notifier.sent) == 1


async def test_cron_trigger_query_parameters(client, database, provider, notifier):
    await add_subscription(database, 100, "a")
    await add_subscription(database, 200, "b")
    provider.results["a"] = [make_paper("2401.0001")]

    response = await client.get("/api/cron/subscriptions", params={"max": 1, "dryRun": "true"})

    body = response.json()
    assert body["processed"] == 1
    assert body["dryRun"] is True
    assert notifier.sent == []


async def test_cron_secret_required(client, settings):
    settings.cron_secret = "s3cret"

    assert (await client.post("/api/cron/subscriptions")).status_code == 401
    wrong = await client.post("/api/cron/subscriptions", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401
    ok = await client.post("/api/cron/subscriptions", headers={"Authorization": "Bearer s3cret"})
    assert ok.status_code == 200


async def test_cron_listing_failure_returns_500(client, worker):
    async def broken_list_due(*args, **kwargs):
        raise PersistenceError("list_due", "no such table: subscriptions")

    worker.database.list_due = broken_list_due

    response = await client.post("/api/cron/subscriptions")

    assert response.status_code == 500
    assert response.json()["success"] is False


async def test_admin_rate_limit_reset(client, limiter):
    limiter.check_rate_limit(7, OPERATION_SEND)

    info = (await client.get("/api/admin/rate-limit/7")).json()
    assert info["limits"][OPERATION_SEND]["remaining"] == 19

    reset = (await client.post("/api/admin/rate-limit/7/reset")).json()
    assert reset["cleared"] == 1
    assert limiter.state.windows == {}


async def test_admin_cache_endpoints_with_disabled_cache(client):
    stats = (await client.get("/api/admin/cache/stats")).json()
    assert stats["stats"]["enabled"] is False

    cleared = (await client.post("/api/admin/cache/clear")).json()
    assert cleared == {"success": True, "deleted": 0}


async def test_health_status(database, limiter):
    sweeper = RateLimitSweeper(limiter)
    health = await get_health_status(database, ResultCache(None), RateLimitState(), sweeper,
                                     scheduler_running=False)

    assert health["status"] == "healthy"
    assert health["checks"] == {"database": True, "cache": True}
    assert health["rate_limiter"]["sweeper_running"] is False


async def test_admin_metrics(client, database, worker, provider):
    store = MetricsStore()
    worker.metrics = store
    container.metrics.override(providers.Object(store))
    clock = FakeClock()
    throttle = Throttle(3.0, clock=clock)
    await throttle.wait()
    arxiv = ArxivClient("https://export.arxiv.org/api/query", throttle=throttle,
                        client=httpx.AsyncClient(transport=httpx.MockTransport(
                            lambda request: httpx.Response(200))))
    container.arxiv_client.override(providers.Object(arxiv))

    await add_subscription(database, 100, "robotics")
    await add_subscription(database, 100, "vision", last_run_at=hours_ago(1))
    await add_subscription(database, 200, "speech")
    provider.results["robotics"] = [make_paper("2401.0001")]
    await client.post("/api/cron/subscriptions", params={"max": 1})

    body = (await client.get("/api/admin/metrics")).json()
    await arxiv.close()

    assert body["success"] is True
    assert body["users"] == {"total": 2}
    assert body["subscriptions"] == {"active": 3}
    assert body["worker"]["dueSubscriptions"] == 1
    assert body["worker"]["lastRun"]["processed"] == 1
    assert body["worker"]["totals"]["runs"] == 1
    assert body["worker"]["totals"]["successful"] == 1
    assert body["worker"]["totals"]["deferred"] == 0
    assert body["worker"]["schedule"] is None
    assert body["arxiv"]["throttle"] == {"canProceed": False, "waitTimeMs": 3000,
                                         "pendingRequests": 0}
    assert isinstance(body["uptimeSeconds"], int)


async def test_admin_metrics_requires_secret(client, settings):
    settings.cron_secret = "s3cret"

    assert (await client.get("/api/admin/metrics")).status_code == 401
