"""
Cron scheduler for the subscription worker using APScheduler.
"""
from typing import Awaitable, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.logging import get_logger
from services.errors import ConfigurationError

logger = get_logger(__name__)

WORKER_JOB_ID = "subscription-worker"

_scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the singleton scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(timezone="UTC")
    return _scheduler


def start_scheduler() -> None:
    scheduler = get_scheduler()
    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")


def shutdown_scheduler() -> None:
    scheduler = get_scheduler()
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown")


def build_cron_trigger(cron_expression: str, timezone: str = "UTC") -> CronTrigger:
    """
    Build a trigger from a 5-field (minute hour day month weekday) or
    6-field (second minute hour day month weekday) expression.

    Raises:
        ConfigurationError: Expression has the wrong number of fields or a bad value
    """
    parts = cron_expression.split()
    if len(parts) == 6:
        second, minute, hour, day, month, day_of_week = parts
    elif len(parts) == 5:
        second = "0"
        minute, hour, day, month, day_of_week = parts
    else:
        raise ConfigurationError(f"Cron expression must have 5 or 6 fields: {cron_expression!r}")

    try:
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone=timezone,
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid cron expression {cron_expression!r}: {e}") from e


def register_cron_job(job_id: str, cron_expression: str,
                      callback: Callable[..., Awaitable], **kwargs) -> str:
    """
    Register an async callback on a cron schedule, replacing any job with the same id.

    Overlapping fires are coalesced into a single running instance.
    """
    scheduler = get_scheduler()
    # Jobs added before start() sit in a pending list that replace_existing does not dedupe
    if scheduler.get_job(job_id) is not None:
        scheduler.remove_job(job_id)
    scheduler.add_job(
        callback,
        trigger=build_cron_trigger(cron_expression),
        id=job_id,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs=kwargs,
    )
    logger.info("Registered cron job", job_id=job_id, cron=cron_expression)
    return job_id


def remove_cron_job(job_id: str) -> bool:
    scheduler = get_scheduler()
    try:
        scheduler.remove_job(job_id)
        logger.info("Removed cron job", job_id=job_id)
        return True
    except JobLookupError:
        logger.warning("Cron job not found", job_id=job_id)
        return False


def _job_dict(job) -> Dict:
    # Pending jobs have no next_run_time until the scheduler starts
    next_run_time = getattr(job, "next_run_time", None)
    return {
        "id": job.id,
        "next_run_time": next_run_time.isoformat() if next_run_time else None,
        "trigger": str(job.trigger),
    }


def get_job_info(job_id: str) -> Optional[Dict]:
    job = get_scheduler().get_job(job_id)
    return _job_dict(job) if job else None


def get_all_jobs() -> List[Dict]:
    return [_job_dict(job) for job in get_scheduler().get_jobs()]


async def run_worker_job(worker) -> None:
    """Scheduled entry point: one live batch, errors logged not raised."""
    try:
        result = await worker.process_subscriptions()
    except Exception as e:
        logger.error("Scheduled subscription batch failed", error=str(e))
        return
    logger.info("Scheduled subscription batch finished",
                processed=result.processed, successful=result.successful,
                failed=result.failed, deferred=result.deferred)


def schedule_worker(worker, cron_expression: str) -> str:
    return register_cron_job(WORKER_JOB_ID, cron_expression, run_worker_job, worker=worker)
