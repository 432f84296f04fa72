"""
Single-flight rebuild of the shared all-entity trend payload.

One payload (every entity x N weeks) lives under a single key. Rebuilds run
under a TTL-bounded lease so that at most one runs across all processes;
readers are served stale-while-revalidate and never wait for a rebuild.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Optional, Set

from ..core.logging_config import get_logger
from ..domain.entities import RebuildResult, RebuildStatus, TrendSlot
from ..domain.exceptions import CacheReadCorruption, LeaseContention
from ..domain.periods import PeriodCalculator
from ..metrics import record_rebuild
from ..repositories.kv_store import IKeyValueStore
from .trend_service import TrendService

logger = get_logger(__name__)

LEASE_MARGIN_SECONDS = 5


class CoordinatorState(str, Enum):
    IDLE = "idle"
    LOCKED_RUNNING = "locked_running"
    PUBLISHING = "publishing"


class RebuildCoordinator:
    """
    Lease-guarded refresh of the shared trend payload.

    State machine: IDLE -> LOCKED_RUNNING (lease acquired) -> PUBLISHING
    (all entities fetched) -> IDLE (payload written and lease released).
    An attempt while a rebuild holds the lease ends as SKIPPED and leaves
    the state untouched.
    """

    def __init__(
        self,
        trend_service: TrendService,
        store: IKeyValueStore,
        calculator: PeriodCalculator,
        periods: int = 12,
        fresh_ttl: int = 600,
        stale_ttl: int = 86400,
        lease_ttl: int = 120,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize coordinator.

        Args:
            trend_service: Builds the per-entity trends
            store: Key-value store holding the payload and the lease
            calculator: Period boundaries
            periods: Weeks per entity in the payload
            fresh_ttl: Age in seconds after which the payload is stale
            stale_ttl: Expiry of the stored payload
            lease_ttl: Lease expiry; the rebuild must finish a little before it
            clock: Time source for payload timestamps
        """
        self.trend_service = trend_service
        self.store = store
        self.calculator = calculator
        self.periods = periods
        self.fresh_ttl = fresh_ttl
        self.stale_ttl = stale_ttl
        self.lease_ttl = lease_ttl
        # Leaves room to publish and release before the lease can expire
        self.rebuild_timeout = lease_ttl - min(LEASE_MARGIN_SECONDS, lease_ttl * 0.2)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.cache_key = f"trend:{periods}w:all"
        self.lease_key = f"trend:{periods}w:lock"
        self.instance_id = uuid.uuid4().hex[:12]

        self.state = CoordinatorState.IDLE
        self._background: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[str]:
        """
        Hold the rebuild lease for the duration of the block.

        The lease is released on every exit path. If the release itself
        fails the lease simply expires after its TTL.

        Raises:
            LeaseContention: If another worker holds the lease
        """
        token = f"{self.instance_id}:{uuid.uuid4().hex}"
        if not await self.store.acquire_lease(self.lease_key, self.lease_ttl, token):
            raise LeaseContention(self.lease_key)
        try:
            yield token
        finally:
            try:
                released = await self.store.release_lease(self.lease_key, token)
                if not released:
                    logger.warning("rebuild_lease_lost", key=self.lease_key)
            except Exception as e:
                logger.error("rebuild_lease_release_failed", key=self.lease_key, error=str(e))

    async def trigger_rebuild(self) -> RebuildResult:
        """
        Rebuild and publish the shared payload unless a rebuild is running.

        Returns:
            RebuildResult with status ok, skipped or error
        """
        started = time.perf_counter()
        logger.info("rebuild_start", key=self.cache_key)

        if self.state is not CoordinatorState.IDLE:
            return self._skipped(started, "in progress in this process")

        holds_lease = False
        try:
            async with self.lease():
                holds_lease = True
                logger.info("rebuild_lease_acquired", key=self.lease_key)
                self.state = CoordinatorState.LOCKED_RUNNING
                try:
                    result = await asyncio.wait_for(
                        self._rebuild(started), timeout=self.rebuild_timeout
                    )
                except asyncio.TimeoutError:
                    result = self._failed(
                        started, f"rebuild timed out after {self.rebuild_timeout}s"
                    )
                except Exception as e:
                    result = self._failed(started, str(e))
        except LeaseContention:
            return self._skipped(started, "lease held")
        except Exception as e:
            result = self._failed(started, f"lease unavailable: {e}")
        finally:
            if holds_lease:
                self.state = CoordinatorState.IDLE

        record_rebuild(result.status.value, result.duration_ms)
        return result

    def _elapsed_ms(self, started: float) -> int:
        return int((time.perf_counter() - started) * 1000)

    def _skipped(self, started: float, reason: str) -> RebuildResult:
        logger.info("rebuild_skipped", reason=reason)
        result = RebuildResult(status=RebuildStatus.SKIPPED, duration_ms=self._elapsed_ms(started))
        record_rebuild(result.status.value, result.duration_ms)
        return result

    def _failed(self, started: float, error: str) -> RebuildResult:
        logger.error("rebuild_failed", error=error)
        return RebuildResult(
            status=RebuildStatus.ERROR, duration_ms=self._elapsed_ms(started), error=error
        )

    async def _rebuild(self, started: float) -> RebuildResult:
        periods = self.calculator.recent_weeks(self.periods)

        fetch_started = time.perf_counter()
        trends = await self.trend_service.build_all_trends(periods)
        logger.info("rebuild_fetch_complete", entities=len(trends), elapsed_ms=self._elapsed_ms(fetch_started))

        self.state = CoordinatorState.PUBLISHING
        entities = {}
        for entity_id, trend in trends.items():
            entry = trend.to_dict()
            if not trend.slots:
                entry["periods"] = [TrendSlot(period=p, error=trend.error).to_dict() for p in periods]
            entities[entity_id] = entry

        payload = {
            "generated_at": self._clock().isoformat(),
            "rebuild_duration_ms": self._elapsed_ms(started),
            "period_starts": [p.start.isoformat() for p in periods],
            "entities": entities,
        }

        write_started = time.perf_counter()
        try:
            await self.store.set(self.cache_key, payload, ttl=self.stale_ttl)
            published = True
        except Exception as e:
            published = False
            logger.error("rebuild_publish_failed", key=self.cache_key, error=str(e))
        logger.info("rebuild_publish", published=published, elapsed_ms=self._elapsed_ms(write_started))

        result = RebuildResult(
            status=RebuildStatus.OK,
            duration_ms=self._elapsed_ms(started),
            entity_count=len(entities),
            published=published,
        )
        logger.info(
            "rebuild_complete",
            duration_ms=result.duration_ms,
            entities=result.entity_count,
            failed=[eid for eid, trend in trends.items() if trend.error],
        )
        return result

    async def get_cached_trend(self) -> Optional[dict]:
        """Current shared payload, or None if absent or unreadable. Never blocks on a rebuild."""
        try:
            payload = await self.store.get(self.cache_key)
        except CacheReadCorruption as e:
            logger.error("trend_payload_corrupt", key=self.cache_key, error=e.message)
            return None
        except Exception as e:
            logger.error("trend_payload_read_failed", key=self.cache_key, error=str(e))
            return None

        if not isinstance(payload, dict) or not isinstance(payload.get("entities"), dict):
            return None
        return payload

    async def get_cached_entity_trend(self, entity_id: str) -> Optional[dict]:
        """One entity's entry in the shared payload."""
        payload = await self.get_cached_trend()
        if payload is None:
            return None
        return payload["entities"].get(entity_id)

    def is_fresh(self, payload: dict) -> bool:
        try:
            generated_at = datetime.fromisoformat(payload["generated_at"])
        except (KeyError, TypeError, ValueError):
            return False
        if generated_at.tzinfo is None:
            generated_at = generated_at.replace(tzinfo=timezone.utc)
        return (self._clock() - generated_at).total_seconds() <= self.fresh_ttl

    async def read_trend(self) -> dict:
        """
        Stale-while-revalidate read of the shared payload.

        - fresh payload: returned as is
        - stale payload: returned, and a background rebuild is started
        - no payload: a background rebuild is started and status "building"
          is returned
        """
        payload = await self.get_cached_trend()
        if payload is None:
            self.trigger_background_rebuild()
            return {
                "status": "building",
                "message": "Trend data is being built. Refresh in about a minute.",
            }

        stale = not self.is_fresh(payload)
        if stale:
            self.trigger_background_rebuild()
        return {"status": "ok", "source": "cache", "stale": stale, **payload}

    def trigger_background_rebuild(self) -> bool:
        """
        Start a rebuild without waiting for it.

        Returns:
            False if a background rebuild from this process is still running
        """
        if self._background is not None and not self._background.done():
            return False
        task = asyncio.get_running_loop().create_task(self.trigger_rebuild())
        self._background = task
        self._tasks.add(task)
        task.add_done_callback(self._on_background_done)
        return True

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("background_rebuild_failed", error=str(error))

    async def wait_for_background(self) -> None:
        """Wait for background rebuilds started by this process."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel background rebuilds; their leases are released on the way out."""
        for task in list(self._tasks):
            task.cancel()
        await self.wait_for_background()


class RebuildScheduler:
    """Background worker that triggers a rebuild every `interval_seconds`."""

    def __init__(self, coordinator: RebuildCoordinator, interval_seconds: int):
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self.running:
            logger.warning("rebuild_scheduler_already_running")
            return

        self.running = True
        self.task = asyncio.create_task(self._run())
        logger.info("rebuild_scheduler_started", interval_s=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the scheduler loop."""
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("rebuild_scheduler_stopped")

    async def _run(self) -> None:
        while self.running:
            try:
                result = await self.coordinator.trigger_rebuild()
                logger.info("scheduled_rebuild", **result.to_dict())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("scheduled_rebuild_error", error=str(e))
            await asyncio.sleep(self.interval_seconds)
