"""Health check utilities for the /health endpoint."""
import time
from typing import Dict, Any, TYPE_CHECKING

from sqlalchemy import text

from core.logging import get_logger

if TYPE_CHECKING:
    from core.database import Database
    from services.rate_limiter import RateLimitState, RateLimitSweeper
    from services.result_cache import ResultCache

logger = get_logger(__name__)

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    return time.time() - _startup_time if _startup_time else 0.0


async def check_database(database: "Database") -> bool:
    try:
        async with database.get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        return False


async def get_health_status(
    database: "Database",
    cache: "ResultCache",
    state: "RateLimitState",
    sweeper: "RateLimitSweeper",
    scheduler_running: bool,
) -> Dict[str, Any]:
    """Overall status plus per-component checks.

    A disabled cache is not a failure; an enabled cache that does not
    answer PING degrades the status.
    """
    db_healthy = await check_database(database)
    cache_healthy = await cache.ping() if cache.enabled else True

    return {
        "status": "healthy" if (db_healthy and cache_healthy) else "degraded",
        "uptime_seconds": round(get_uptime(), 1),
        "checks": {
            "database": db_healthy,
            "cache": cache_healthy,
        },
        "cache": {
            "enabled": cache.enabled,
        },
        "rate_limiter": {
            "tracked_principals": state.tracked_principals,
            "windows": len(state.windows),
            "sweeper_running": sweeper.running,
        },
        "scheduler": {
            "running": scheduler_running,
        },
    }
