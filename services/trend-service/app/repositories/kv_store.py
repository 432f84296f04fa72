"""
Durable key-value store used for the period cache, the shared trend payload
and the rebuild lease.

Defines the contract the core needs and two implementations: Redis for
production and an in-process store for tests and Redis-less development.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..core.logging_config import get_logger
from ..domain.exceptions import CacheReadCorruption, CacheWriteFailure

logger = get_logger(__name__)

# Delete the lease only if it still belongs to the caller.
RELEASE_LEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class IKeyValueStore(ABC):
    """
    Abstract key-value store.

    Values are JSON documents. Reads of undecodable values raise
    CacheReadCorruption; failed writes raise CacheWriteFailure.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """
        Read and decode a value.

        Returns:
            Decoded value, or None if the key is absent
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """
        Encode and store a value.

        Args:
            key: Storage key
            value: JSON-serializable value
            ttl: Expiry in seconds; None stores without expiry
        """
        pass

    @abstractmethod
    async def acquire_lease(self, key: str, ttl: int, owner: str) -> bool:
        """
        Atomically take a lease if nobody holds it.

        Returns:
            True if the caller now holds the lease
        """
        pass

    @abstractmethod
    async def release_lease(self, key: str, owner: str) -> bool:
        """
        Release a lease held by `owner`; a lease taken over after expiry is left alone.

        Returns:
            True if the lease was released
        """
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass


class RedisKeyValueStore(IKeyValueStore):
    """Redis implementation using SET NX EX leases and JSON string values."""

    def __init__(self, redis_client: redis.Redis, prefix: str = "trend-service:"):
        """
        Args:
            redis_client: Async Redis client (decode_responses=True)
            prefix: Namespace prepended to every key
        """
        self.redis = redis_client
        self.prefix = prefix
        self._release_script = self.redis.register_script(RELEASE_LEASE_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.redis.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CacheReadCorruption(key, str(e)) from e

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            payload = json.dumps(value)
            if ttl:
                await self.redis.set(self._key(key), payload, ex=ttl)
            else:
                await self.redis.set(self._key(key), payload)
        except (RedisError, TypeError, ValueError) as e:
            raise CacheWriteFailure(key, str(e)) from e

    async def acquire_lease(self, key: str, ttl: int, owner: str) -> bool:
        acquired = await self.redis.set(self._key(key), owner, nx=True, ex=ttl)
        return bool(acquired)

    async def release_lease(self, key: str, owner: str) -> bool:
        released = await self._release_script(keys=[self._key(key)], args=[owner])
        return bool(released)

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            logger.error("redis_ping_failed", error=str(e))
            return False


class MemoryKeyValueStore(IKeyValueStore):
    """
    In-process store with the same semantics as the Redis one.

    Values are stored JSON-encoded so that reads return fresh copies and
    unserializable values fail the same way they would against Redis.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return raw

    async def get(self, key: str) -> Optional[Any]:
        raw = self._live(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise CacheReadCorruption(key, str(e)) from e

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise CacheWriteFailure(key, str(e)) from e
        self._data[key] = (raw, self._clock() + ttl if ttl else None)

    def set_raw(self, key: str, raw: str) -> None:
        """Store an undecoded value (used to simulate corruption)."""
        self._data[key] = (raw, None)

    async def acquire_lease(self, key: str, ttl: int, owner: str) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (owner, self._clock() + ttl)
            return True

    async def release_lease(self, key: str, owner: str) -> bool:
        async with self._lock:
            if self._live(key) != owner:
                return False
            del self._data[key]
            return True

    async def ping(self) -> bool:
        return True
