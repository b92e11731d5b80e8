"""
Paper alerts service: FastAPI app hosting the subscription worker trigger,
operator endpoints and the optional in-process cron schedule.
"""

from datetime import datetime, timezone
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.config import Settings
from core.health import get_health_status, set_startup_time
from core.logging import configure_logging, get_logger
from routers import admin, cron
from services import scheduler

# Initialize settings and logging
settings = Settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting paper alerts service")
    set_startup_time()

    await container.database().startup()
    await container.notifier().startup()
    await container.rate_limit_sweeper().start()

    if settings.worker_schedule_enabled:
        scheduler.schedule_worker(container.subscription_worker(), settings.worker_cron)
        scheduler.start_scheduler()

    logger.info("Services started successfully",
                cache_enabled=container.result_cache().enabled,
                schedule_enabled=settings.worker_schedule_enabled)
    yield

    if settings.worker_schedule_enabled:
        scheduler.remove_cron_job(scheduler.WORKER_JOB_ID)
    scheduler.shutdown_scheduler()
    await container.rate_limit_sweeper().stop()
    cleared = container.rate_limit_state().clear()
    await container.notifier().shutdown()
    await container.arxiv_client().close()
    await container.result_cache().close()
    await container.database().shutdown()
    logger.info("Services shutdown complete", rate_limit_windows_cleared=cleared)


app = FastAPI(
    title="Paper Alerts",
    version="1.0.0",
    description="Scheduled research paper notifications",
    lifespan=lifespan,
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", path=request.url.path,
                         error_type=type(e).__name__, error=str(e), exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)

app.include_router(cron.router)
app.include_router(admin.router)


@app.get("/health")
async def health_check():
    health = await get_health_status(
        database=container.database(),
        cache=container.result_cache(),
        state=container.rate_limit_state(),
        sweeper=container.rate_limit_sweeper(),
        scheduler_running=scheduler.get_scheduler().running,
    )
    return {
        **health,
        "service": "paper-alerts",
        "version": app.version,
        "environment": "development" if settings.is_development else "production",
        "jobs": scheduler.get_all_jobs(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting paper alerts service",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers
    )
