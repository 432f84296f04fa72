"""
Shared dependencies for the application.

Builds the object graph once at startup and provides dependency injection
functions used across routers.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from .cache.report_cache import ReportCache
from .core.config import Settings
from .core.logging_config import get_logger
from .core.redis_manager import RedisConnectionManager
from .domain.periods import Clock, PeriodCalculator
from .infrastructure.commerce_client import CommerceAPIClient
from .infrastructure.rate_limiter import CallGapLimiter
from .infrastructure.retry_client import RetryClient
from .repositories.kv_store import IKeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from .repositories.period_cache import PeriodCache
from .services.rebuild_service import RebuildCoordinator, RebuildScheduler
from .services.trend_service import TrendService

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Every long-lived component of the service."""

    settings: Settings
    calculator: PeriodCalculator
    retry_client: RetryClient
    commerce_client: CommerceAPIClient
    store: IKeyValueStore
    period_cache: PeriodCache
    trend_service: TrendService
    coordinator: RebuildCoordinator
    report_cache: ReportCache
    scheduler: Optional[RebuildScheduler] = None
    redis_manager: Optional[RedisConnectionManager] = None

    async def startup(self) -> None:
        """Load the period cache and start the periodic rebuild, if configured."""
        await self.period_cache.load()
        if self.scheduler is not None:
            await self.scheduler.start()

    async def shutdown(self) -> None:
        """Stop background work, flush buffered cache writes and close connections."""
        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.coordinator.aclose()
        await self.period_cache.aclose()
        await self.retry_client.close()
        if self.redis_manager is not None:
            await self.redis_manager.close()


async def build_container(
    settings: Settings,
    store: Optional[IKeyValueStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Clock] = None,
) -> ServiceContainer:
    """
    Wire the service from settings.

    Args:
        settings: Service settings
        store: Key-value store override; otherwise Redis when REDIS_URL is set,
            else an in-process store
        transport: httpx transport override for the upstream client
        clock: Current-instant override for period boundaries
    """
    redis_manager = None
    if store is None:
        if settings.REDIS_URL:
            redis_manager = RedisConnectionManager(settings.REDIS_URL)
            store = RedisKeyValueStore(await redis_manager.get_client())
        else:
            logger.warning("redis_not_configured", fallback="memory")
            store = MemoryKeyValueStore()

    calculator = PeriodCalculator(settings.TIMEZONE, clock=clock)

    headers = {}
    if settings.UPSTREAM_CLIENT_ID:
        headers["clientId"] = settings.UPSTREAM_CLIENT_ID
    if settings.UPSTREAM_API_KEY:
        headers["key"] = settings.UPSTREAM_API_KEY

    retry_client = RetryClient(
        base_url=settings.UPSTREAM_BASE_URL,
        headers=headers,
        limiter=CallGapLimiter(settings.UPSTREAM_MIN_CALL_GAP_MS / 1000),
        timeout_seconds=settings.UPSTREAM_TIMEOUT_SECONDS,
        max_attempts=settings.UPSTREAM_MAX_ATTEMPTS,
        backoff_cap_seconds=settings.UPSTREAM_BACKOFF_CAP_SECONDS,
        page_size=settings.UPSTREAM_PAGE_SIZE,
        transport=transport,
    )
    commerce_client = CommerceAPIClient(retry_client, settings.EXCLUDED_ENTITY_NAMES)

    period_cache = PeriodCache(
        store,
        calculator,
        storage_key=settings.PERIOD_CACHE_KEY,
        flush_delay=settings.PERIOD_CACHE_FLUSH_DELAY,
    )
    trend_service = TrendService(
        commerce_client,
        period_cache,
        calculator,
        concurrency=settings.TREND_CONCURRENCY,
        max_periods=settings.TREND_MAX_PERIODS,
    )
    coordinator = RebuildCoordinator(
        trend_service,
        store,
        calculator,
        periods=settings.TREND_PERIODS,
        fresh_ttl=settings.TREND_FRESH_TTL,
        stale_ttl=settings.TREND_STALE_TTL,
        lease_ttl=settings.REBUILD_LEASE_TTL,
    )
    report_cache = ReportCache(max_size=settings.REPORT_CACHE_MAX_ENTRIES)
    scheduler = None
    if settings.REBUILD_INTERVAL_SECONDS > 0:
        scheduler = RebuildScheduler(coordinator, settings.REBUILD_INTERVAL_SECONDS)

    return ServiceContainer(
        settings=settings,
        calculator=calculator,
        retry_client=retry_client,
        commerce_client=commerce_client,
        store=store,
        period_cache=period_cache,
        trend_service=trend_service,
        coordinator=coordinator,
        report_cache=report_cache,
        scheduler=scheduler,
        redis_manager=redis_manager,
    )


# Global container instance (set by main app)
_container: Optional[ServiceContainer] = None


def set_container(container: Optional[ServiceContainer]) -> None:
    """
    Set the global container instance.

    Called by main app during startup and shutdown.
    """
    global _container
    _container = container


def get_container() -> ServiceContainer:
    if _container is None:
        raise RuntimeError("Service container not initialized")
    return _container


async def get_settings() -> Settings:
    return get_container().settings


async def get_trend_service() -> TrendService:
    return get_container().trend_service


async def get_coordinator() -> RebuildCoordinator:
    return get_container().coordinator


async def get_report_cache() -> ReportCache:
    return get_container().report_cache
