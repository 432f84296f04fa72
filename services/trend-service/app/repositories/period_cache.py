"""
Write-once cache of summaries for closed periods.

Closed history cannot change, so a closed period's summary is cached without
expiry and never overwritten. The whole cache is persisted as one JSON
document in the key-value store; writes are buffered and flushed once per
debounce window.
"""

import asyncio
from datetime import datetime, timezone
from decimal import InvalidOperation
from typing import Callable, Dict, Optional

from ..core.logging_config import get_logger
from ..domain.entities import CacheEntry, Period, PeriodKey, Summary
from ..domain.exceptions import CacheReadCorruption
from ..domain.periods import PeriodCalculator
from ..metrics import (
    period_cache_entries,
    period_cache_hits_total,
    period_cache_misses_total,
    period_cache_writes_total,
)
from .kv_store import IKeyValueStore

logger = get_logger(__name__)


class PeriodCache:
    """
    Period summary cache keyed by (entity id, period start).

    Rules:
    - entries exist only for closed periods with net sales above zero
    - an entry is never replaced once written
    - open periods never read from or write to the cache
    """

    def __init__(
        self,
        store: IKeyValueStore,
        calculator: PeriodCalculator,
        storage_key: str = "period-cache:v1",
        flush_delay: float = 3.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            store: Durable key-value store
            calculator: Decides whether a period is closed
            storage_key: Key holding the serialized cache
            flush_delay: Seconds writes are buffered before one flush
            clock: Time source for entry write timestamps
        """
        self.store = store
        self.calculator = calculator
        self.storage_key = storage_key
        self.flush_delay = flush_delay
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._entries: Dict[PeriodKey, CacheEntry] = {}
        self._dirty = False
        self._flush_lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None

        self.hits = 0
        self.misses = 0
        self.flush_failures = 0

    async def load(self) -> int:
        """
        Load persisted entries. Called once at startup.

        Undecodable documents and entries are dropped and recomputed on
        demand; entries already written in this process take precedence.

        Returns:
            Number of entries loaded
        """
        try:
            raw = await self.store.get(self.storage_key)
        except CacheReadCorruption as e:
            logger.error("period_cache_corrupt", key=self.storage_key, error=e.message)
            return 0
        except Exception as e:
            logger.error("period_cache_load_failed", key=self.storage_key, error=str(e))
            return 0

        if not isinstance(raw, dict):
            if raw is not None:
                logger.error("period_cache_corrupt", key=self.storage_key, error="not a mapping")
            return 0

        loaded = 0
        corrupt = 0
        for raw_key, raw_entry in raw.items():
            try:
                key = PeriodKey.from_storage(raw_key)
                entry = CacheEntry.from_dict(raw_entry)
            except (KeyError, TypeError, ValueError, InvalidOperation, AttributeError):
                corrupt += 1
                continue
            if entry.summary.net_sales <= 0:
                corrupt += 1
                continue
            if key not in self._entries:
                self._entries[key] = entry
                loaded += 1

        period_cache_entries.set(len(self._entries))
        if corrupt:
            logger.warning("period_cache_entries_dropped", count=corrupt)
        logger.info("period_cache_loaded", entries=loaded)
        return loaded

    def get(self, entity_id: str, period: Period) -> Optional[Summary]:
        """Cached summary of a closed period; open periods always miss."""
        if not self.calculator.is_closed(period):
            return None

        entry = self._entries.get(PeriodKey(entity_id, period.start))
        if entry is None:
            self.misses += 1
            period_cache_misses_total.inc()
            return None

        self.hits += 1
        period_cache_hits_total.inc()
        return entry.summary

    def put(self, entity_id: str, period: Period, summary: Summary) -> bool:
        """
        Cache a closed period's summary.

        Zero-sales summaries are not cached: they cannot be told apart from a
        fetch that silently returned nothing.

        Returns:
            True if a new entry was written
        """
        if not self.calculator.is_closed(period):
            return False

        if summary.net_sales <= 0:
            period_cache_writes_total.labels(result="zero_sales").inc()
            logger.debug(
                "period_cache_skip_zero_sales",
                entity=entity_id,
                period_start=period.start.isoformat(),
            )
            return False

        key = PeriodKey(entity_id, period.start)
        if key in self._entries:
            period_cache_writes_total.labels(result="exists").inc()
            return False

        self._entries[key] = CacheEntry(summary=summary, written_at=self._clock())
        self._dirty = True
        period_cache_writes_total.labels(result="written").inc()
        period_cache_entries.set(len(self._entries))
        self._schedule_flush()
        return True

    def _schedule_flush(self) -> None:
        """Start the debounce timer unless one is already pending."""
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._flush_task = loop.create_task(self._delayed_flush())

    async def _delayed_flush(self) -> None:
        # Writes that land while a flush is in progress, and failed flushes,
        # are picked up by the next round.
        while True:
            await asyncio.sleep(self.flush_delay)
            await self.flush()
            if not self._dirty:
                return

    async def flush(self) -> bool:
        """
        Persist buffered writes as one snapshot.

        Returns:
            True if nothing was pending or the write succeeded
        """
        async with self._flush_lock:
            if not self._dirty:
                return True

            self._dirty = False
            snapshot = {key.to_storage(): entry.to_dict() for key, entry in self._entries.items()}
            try:
                await self.store.set(self.storage_key, snapshot)
            except asyncio.CancelledError:
                self._dirty = True
                raise
            except Exception as e:
                self._dirty = True
                self.flush_failures += 1
                logger.error("period_cache_flush_failed", key=self.storage_key, error=str(e))
                return False

            logger.debug("period_cache_flushed", entries=len(snapshot))
            return True

    async def aclose(self) -> None:
        """Cancel the pending timer and flush whatever is buffered."""
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self._flush_task = None
        await self.flush()

    @property
    def pending(self) -> bool:
        return self._dirty

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        """Get cache statistics."""
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "pending_flush": self._dirty,
            "flush_failures": self.flush_failures,
        }
