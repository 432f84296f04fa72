"""
In-memory TTL cache for computed report responses.

Dashboard, sales, product, category, employee and live trend responses are
cached per query for a few minutes so that repeated page loads do not hit
the upstream API again. Entries are bounded by an LRU policy and can be
dropped all at once through the cache-clear endpoint.
"""

import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from cachetools import LRUCache  # type: ignore[import-untyped]

from ..core.logging_config import get_logger

logger = get_logger(__name__)


class ReportCache:
    """
    Process-local LRU cache of report payloads with a per-entry TTL.

    Attributes:
        cache: LRU cache of (expires_at, value) pairs
        max_size: Maximum number of reports kept
        hits: Number of cache hits
        misses: Number of cache misses (including expired entries)
        evictions: Number of entries dropped due to the size limit
    """

    def __init__(self, max_size: int = 1000, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            max_size: Maximum number of reports to cache
            clock: Monotonic time source in seconds
        """
        self.cache: LRUCache = LRUCache(maxsize=max_size)
        self.max_size = max_size
        self._clock = clock

        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Tuple[bool, Any]:
        """
        Look up a live entry.

        Returns:
            (found, value); expired entries are removed and reported as missing
        """
        entry = self.cache.get(key)
        if entry is None:
            self.misses += 1
            return False, None

        expires_at, value = entry
        if expires_at <= self._clock():
            del self.cache[key]
            self.misses += 1
            logger.debug("report_cache_expired", key=key)
            return False, None

        self.hits += 1
        return True, value

    def set(self, key: str, value: Any, ttl: float) -> None:
        if len(self.cache) >= self.max_size and key not in self.cache:
            self.evictions += 1
        self.cache[key] = (self._clock() + ttl, value)

    async def get_or_compute(
        self,
        key: str,
        ttl: float,
        compute: Callable[[], Awaitable[Any]],
        should_cache: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """
        Return the cached report for key, computing and storing it on a miss.

        Failures of compute propagate and are not cached, and neither are
        results rejected by should_cache.

        Args:
            key: Report key, unique per route and query
            ttl: Seconds the computed value stays valid
            compute: Coroutine factory producing the report
            should_cache: Predicate deciding whether a computed value is stored
        """
        found, value = self.get(key)
        if found:
            logger.debug("report_cache_hit", key=key)
            return value

        value = await compute()
        if should_cache is None or should_cache(value):
            self.set(key, value, ttl)
        return value

    def clear(self) -> int:
        """
        Drop every cached report.

        Returns:
            Number of entries removed
        """
        count = len(self.cache)
        self.cache.clear()
        logger.info("report_cache_cleared", entries=count)
        return count

    def stats(self) -> Dict[str, int]:
        return {
            "size": len(self.cache),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }
