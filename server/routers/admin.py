"""Operator endpoints for the result cache, rate limiter and service metrics."""

from fastapi import APIRouter, Depends

from core.container import container
from core.database import Database
from core.health import get_uptime
from core.logging import get_logger
from routers.cron import verify_cron_secret
from services import scheduler
from services.arxiv_client import ArxivClient
from services.metrics import MetricsStore
from services.rate_limiter import OPERATION_SEARCH, OPERATION_SEND, RateLimiter
from services.result_cache import ResultCache
from services.subscription_worker import SubscriptionWorker

logger = get_logger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(verify_cron_secret)])


@router.get("/cache/stats")
async def cache_stats(cache: ResultCache = Depends(lambda: container.result_cache())):
    return {"success": True, "stats": await cache.stats()}


@router.post("/cache/clear")
async def clear_cache(cache: ResultCache = Depends(lambda: container.result_cache())):
    deleted = await cache.clear_all()
    logger.info("Cache cleared by operator", deleted=deleted)
    return {"success": True, "deleted": deleted}


@router.get("/rate-limit/{owner_id}")
async def rate_limit_info(
    owner_id: int,
    limiter: RateLimiter = Depends(lambda: container.rate_limiter())
):
    return {
        "success": True,
        "owner_id": owner_id,
        "limits": {
            operation: limiter.get_rate_limit_info(owner_id, operation)
            for operation in (OPERATION_SEND, OPERATION_SEARCH)
        },
    }


@router.post("/rate-limit/{owner_id}/reset")
async def reset_rate_limit(
    owner_id: int,
    limiter: RateLimiter = Depends(lambda: container.rate_limiter())
):
    cleared = limiter.reset_rate_limit(owner_id)
    logger.info("Rate limit reset by operator", owner_id=owner_id, windows=cleared)
    return {"success": True, "owner_id": owner_id, "cleared": cleared}


@router.get("/metrics")
async def metrics(
    database: Database = Depends(lambda: container.database()),
    worker: SubscriptionWorker = Depends(lambda: container.subscription_worker()),
    arxiv: ArxivClient = Depends(lambda: container.arxiv_client()),
    store: MetricsStore = Depends(lambda: container.metrics())
):
    """Usage counts, worker backlog, arXiv throttle state and cumulative batch counters."""
    throttle = arxiv.throttle
    return {
        "success": True,
        "users": {"total": await database.count_users()},
        "subscriptions": {"active": await database.count_total_active()},
        "worker": {
            **await worker.get_worker_status(),
            "totals": store.batch_totals(),
            "schedule": scheduler.get_job_info(scheduler.WORKER_JOB_ID),
        },
        "arxiv": {
            "throttle": {
                "canProceed": throttle.can_proceed(),
                "waitTimeMs": int(throttle.wait_time() * 1000),
                "pendingRequests": throttle.pending,
            },
        },
        "uptimeSeconds": int(get_uptime()),
    }
