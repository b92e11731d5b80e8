"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from services.arxiv_client import ArxivClient
from services.metrics import MetricsStore
from services.notifier import TelegramNotifier
from services.rate_limiter import RateLimiter, RateLimitState, RateLimitSweeper
from services.result_cache import ResultCache
from services.subscription_worker import SubscriptionWorker
from services.subscriptions import SubscriptionService
from services.view_ledger import ViewLedger


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Persistence
    database = providers.Singleton(
        Database,
        settings=settings
    )

    view_ledger = providers.Singleton(
        ViewLedger,
        database=database
    )

    # Result cache (disabled when the cache URL does not parse)
    result_cache = providers.Singleton(
        ResultCache.from_settings,
        settings=settings
    )

    # Rate limiting; state lives for the process and is cleared at shutdown
    rate_limit_state = providers.Singleton(
        RateLimitState,
    )

    rate_limiter = providers.Singleton(
        RateLimiter.from_settings,
        settings=settings,
        state=rate_limit_state
    )

    rate_limit_sweeper = providers.Singleton(
        RateLimitSweeper,
        limiter=rate_limiter,
        sweep_interval=settings.provided.rate_limit_sweep_interval
    )

    # External collaborators
    arxiv_client = providers.Singleton(
        ArxivClient.from_settings,
        settings=settings
    )

    notifier = providers.Singleton(
        TelegramNotifier.from_settings,
        settings=settings
    )

    # Process-lifetime counters for the admin metrics endpoint
    metrics = providers.Singleton(
        MetricsStore,
    )

    # Services
    subscription_service = providers.Factory(
        SubscriptionService,
        database=database,
        settings=settings
    )

    subscription_worker = providers.Factory(
        SubscriptionWorker,
        database=database,
        cache=result_cache,
        ledger=view_ledger,
        limiter=rate_limiter,
        provider=arxiv_client,
        notifier=notifier,
        settings=settings,
        metrics=metrics
    )


# Global container instance
container = Container()
