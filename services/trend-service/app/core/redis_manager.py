"""
Redis connection pool lifecycle.

Owns the single connection pool shared by the period cache, the trend
payload and the rebuild lease.
"""

from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff

from .logging_config import get_logger

logger = get_logger(__name__)


class RedisConnectionManager:
    """
    Manages Redis connection pool and client lifecycle.

    The client is created lazily on first use and torn down by close().
    """

    def __init__(
        self,
        redis_url: str,
        max_connections: int = 20,
        socket_timeout: int = 5,
        max_retries: int = 3,
    ) -> None:
        """
        Initialize manager.

        Args:
            redis_url: Redis connection URL
            max_connections: Pool size
            socket_timeout: Socket read/write and connect timeout in seconds
            max_retries: Client-side retries on connection errors
        """
        self.redis_url = redis_url
        self.max_connections = max_connections
        self.socket_timeout = socket_timeout
        self.max_retries = max_retries
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    async def get_client(self) -> Redis:
        """Get or create the Redis client."""
        if self._client is None:
            self._pool = ConnectionPool.from_url(
                self.redis_url,
                max_connections=self.max_connections,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
                decode_responses=True,
                retry_on_timeout=True,
                retry=Retry(ExponentialBackoff(base=0.01, cap=1.0), self.max_retries),
            )
            self._client = Redis(connection_pool=self._pool)
            logger.info(
                "redis_pool_created",
                host=self.redis_url.split("@")[-1],
                max_connections=self.max_connections,
            )
        return self._client

    async def close(self) -> None:
        """Close Redis connection and clean up resources."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("redis_client_closed")

        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
