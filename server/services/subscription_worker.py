"""Subscription delivery worker.

One invocation selects the due subscriptions and runs each through
fetch -> filter -> admit -> deliver -> commit. Owners run concurrently up
to worker_concurrency; one owner's subscriptions run one after another.
Every subscription ends in exactly one terminal outcome (delivered,
skipped, deferred or failed); nothing raised inside one subscription's
pipeline escapes the batch. Only failing to list due subscriptions is
fatal to the run.
"""

import asyncio
import time
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set

from core.config import Settings
from core.database import Database
from core.logging import get_logger
from models.papers import (
    BatchResult,
    DueSubscription,
    PaperSummary,
    SubscriptionOutcome,
    SubscriptionReport,
)
from services.errors import PaperAlertsError
from services.metrics import MetricsStore
from services.notifier import NotificationChannel, format_subscription_update
from services.rate_limiter import OPERATION_SEARCH, OPERATION_SEND, RateLimiter
from services.result_cache import ResultCache
from services.view_ledger import ViewLedger

logger = get_logger(__name__)

STATUS_DUE_LIMIT = 1000


class PaperProvider(Protocol):
    async def search(self, topic: str, category: Optional[str] = None,
                     offset: int = 0, limit: int = 10) -> List[PaperSummary]:
        ...


def _unseen(papers: List[PaperSummary], viewed: set) -> List[PaperSummary]:
    """Provider results minus viewed ids, first occurrence wins."""
    seen = set(viewed)
    fresh = []
    for paper in papers:
        if paper.paper_id in seen:
            continue
        seen.add(paper.paper_id)
        fresh.append(paper)
    return fresh


def group_by_owner(due: Iterable[DueSubscription]) -> List[List[DueSubscription]]:
    """Split due subscriptions per owner, keeping list order within and across groups."""
    groups: Dict[int, List[DueSubscription]] = {}
    for subscription in due:
        groups.setdefault(subscription.owner_id, []).append(subscription)
    return list(groups.values())


class SubscriptionWorker:
    """Processes due subscriptions into a BatchResult."""

    def __init__(self, database: Database, cache: ResultCache, ledger: ViewLedger,
                 limiter: RateLimiter, provider: PaperProvider,
                 notifier: NotificationChannel, settings: Settings,
                 metrics: Optional[MetricsStore] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.database = database
        self.cache = cache
        self.ledger = ledger
        self.limiter = limiter
        self.provider = provider
        self.notifier = notifier
        self.settings = settings
        self.metrics = metrics
        self._clock = clock

    async def process_subscriptions(self, max_subscriptions: Optional[int] = None,
                                    dry_run: bool = False) -> BatchResult:
        """Run one batch.

        Args:
            max_subscriptions: Cap on selected subscriptions (defaults to worker_batch_limit)
            dry_run: Fetch and filter only; no admission, send, ledger or last-run writes

        Raises:
            PersistenceError: Due subscriptions could not be listed
        """
        started = self._clock()
        deadline = started + self.settings.worker_run_deadline
        result = BatchResult(dry_run=dry_run)

        if max_subscriptions is not None and max_subscriptions < 1:
            raise ValueError("max_subscriptions must be at least 1")
        limit = max_subscriptions if max_subscriptions is not None else self.settings.worker_batch_limit
        due = await self.database.list_due(limit=limit)
        logger.info("Subscription batch started", due=len(due), limit=limit, dry_run=dry_run)

        semaphore = asyncio.Semaphore(max(1, self.settings.worker_concurrency))
        reports: Dict[int, SubscriptionReport] = {}

        async def run_owner(subscriptions: List[DueSubscription]) -> None:
            # One owner at a time: each commit lands before the next filter reads the ledger
            claimed: Set[str] = set()
            async with semaphore:
                for subscription in subscriptions:
                    if self._clock() >= deadline:
                        result.deadline_reached = True
                        return
                    result.processed += 1
                    reports[subscription.id] = await self._run_isolated(subscription, dry_run, claimed)

        # Owners are dispatched in order of their oldest due subscription
        await asyncio.gather(*[run_owner(group) for group in group_by_owner(due)])
        for subscription in due:
            if subscription.id in reports:
                result.record(reports[subscription.id])

        result.duration_ms = int((self._clock() - started) * 1000)
        if result.deadline_reached:
            logger.warning("Run deadline reached, remaining subscriptions left due",
                           skipped=len(due) - result.processed,
                           deadline_seconds=self.settings.worker_run_deadline)
        logger.info("Subscription batch complete",
                    processed=result.processed,
                    successful=result.successful,
                    failed=result.failed,
                    deferred=result.deferred,
                    papers_delivered=result.papers_delivered,
                    duration_ms=result.duration_ms,
                    dry_run=dry_run)
        if self.metrics is not None:
            self.metrics.record_batch(result)
        return result

    async def get_worker_status(self) -> Dict:
        """Current due count and the last recorded batch."""
        due = await self.database.list_due(limit=STATUS_DUE_LIMIT)
        return {
            "dueSubscriptions": len(due),
            "lastRun": self.metrics.last_batch if self.metrics is not None else None,
        }

    async def _run_isolated(self, subscription: DueSubscription, dry_run: bool,
                            claimed: Optional[Set[str]] = None) -> SubscriptionReport:
        timeout = self.settings.worker_subscription_timeout
        context = dict(subscription_id=subscription.id, owner_id=subscription.owner_id,
                       topic=subscription.topic)
        try:
            return await asyncio.wait_for(self.process_one(subscription, dry_run, claimed),
                                          timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("Subscription timed out", timeout_seconds=timeout, **context)
            return self._failed(subscription, f"timed out after {timeout}s")
        except PaperAlertsError as e:
            logger.error("Subscription failed", error_type=type(e).__name__, error=str(e), **context)
            return self._failed(subscription, str(e))
        except Exception as e:
            logger.exception("Unexpected error processing subscription", error=str(e), **context)
            return self._failed(subscription, f"{type(e).__name__}: {e}")

    async def process_one(self, subscription: DueSubscription, dry_run: bool = False,
                          claimed: Optional[Set[str]] = None) -> SubscriptionReport:
        """Pipeline for a single subscription. Errors propagate to the caller.

        claimed holds ids already delivered to this owner earlier in the batch;
        a dry run writes no ledger rows, so this set is its only record of them.
        """
        owner_id = subscription.owner_id
        results_limit = self.settings.worker_results_per_subscription

        # Fetch
        papers = await self.cache.get(subscription.topic, 0, results_limit, subscription.category)
        if papers is None:
            if not dry_run:
                decision = self.limiter.check_rate_limit(owner_id, OPERATION_SEARCH)
                if not decision.allowed:
                    return self._deferred(subscription, decision.retry_after_ms, OPERATION_SEARCH)
            papers = await self.provider.search(subscription.topic, subscription.category,
                                                offset=0, limit=results_limit)
            await self.cache.set(subscription.topic, 0, results_limit, papers, subscription.category)

        # Filter
        viewed = await self.ledger.get_viewed_ids(owner_id, [p.paper_id for p in papers])
        fresh = _unseen(papers, viewed | claimed if claimed else viewed)
        if not fresh:
            if not dry_run:
                await self.database.update_last_run(subscription.id)
            logger.debug("No new papers", subscription_id=subscription.id,
                         results=len(papers), viewed=len(viewed))
            return SubscriptionReport(subscription.id, owner_id, subscription.topic,
                                      SubscriptionOutcome.SKIPPED)

        paper_ids = [paper.paper_id for paper in fresh]
        if dry_run:
            logger.info("Dry run, would deliver", subscription_id=subscription.id,
                        owner_id=owner_id, papers=len(paper_ids))
            if claimed is not None:
                claimed.update(paper_ids)
            return SubscriptionReport(subscription.id, owner_id, subscription.topic,
                                      SubscriptionOutcome.DELIVERED, paper_ids=paper_ids)

        # Admit
        decision = self.limiter.check_rate_limit(owner_id, OPERATION_SEND)
        if not decision.allowed:
            return self._deferred(subscription, decision.retry_after_ms, OPERATION_SEND)

        # Deliver
        message = format_subscription_update(subscription.topic, fresh, subscription.category)
        await self.notifier.send(subscription.chat_id, message)
        if claimed is not None:
            claimed.update(paper_ids)

        # Commit
        inserted = await self.ledger.mark_all_viewed(owner_id, paper_ids)
        await self.database.update_last_run(subscription.id)

        logger.info("Subscription delivered", subscription_id=subscription.id,
                    owner_id=owner_id, papers=len(paper_ids), newly_viewed=inserted)
        return SubscriptionReport(subscription.id, owner_id, subscription.topic,
                                  SubscriptionOutcome.DELIVERED, paper_ids=paper_ids)

    def _deferred(self, subscription: DueSubscription, retry_after_ms: Optional[int],
                  operation: str) -> SubscriptionReport:
        logger.info("Subscription deferred", subscription_id=subscription.id,
                    owner_id=subscription.owner_id, operation=operation,
                    retry_after_ms=retry_after_ms)
        return SubscriptionReport(subscription.id, subscription.owner_id, subscription.topic,
                                  SubscriptionOutcome.DEFERRED, retry_after_ms=retry_after_ms)

    @staticmethod
    def _failed(subscription: DueSubscription, error: str) -> SubscriptionReport:
        return SubscriptionReport(subscription.id, subscription.owner_id, subscription.topic,
                                  SubscriptionOutcome.FAILED, error=error)
