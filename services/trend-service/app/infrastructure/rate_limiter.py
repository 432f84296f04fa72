"""
Process-wide minimum gap between upstream calls.

The upstream rate limit applies to the account, not to a connection, so a
single limiter instance is shared by every caller of one client.
"""

import asyncio
import time
from typing import Awaitable, Callable

from ..core.logging_config import get_logger

logger = get_logger(__name__)


class CallGapLimiter:
    """
    Enforces a minimum interval between consecutive calls.

    Holds one monotonically advancing "next allowed call time". Each caller
    reserves its slot and advances the clock in a single step with no
    suspension in between, so concurrent callers queue up one gap apart
    without a lock. Only then does the caller sleep until its slot.
    """

    def __init__(
        self,
        min_gap_seconds: float,
        name: str = "upstream",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize limiter.

        Args:
            min_gap_seconds: Minimum time between two call starts
            name: Limiter name for logging
            clock: Monotonic time source
            sleep: Async sleep used to wait for a slot
        """
        self.name = name
        self.min_gap_seconds = min_gap_seconds
        self._clock = clock
        self._sleep = sleep
        self._next_allowed_at = 0.0
        self.calls = 0

    def reserve(self) -> float:
        """Claim the next slot and return how long to wait for it."""
        now = self._clock()
        slot = max(now, self._next_allowed_at)
        self._next_allowed_at = slot + self.min_gap_seconds
        self.calls += 1
        return slot - now

    async def wait_turn(self) -> None:
        """Wait until this caller's slot arrives."""
        delay = self.reserve()
        if delay > 0:
            logger.debug("rate_limiter_wait", limiter=self.name, delay_s=round(delay, 3))
            await self._sleep(delay)

    def get_current_usage(self) -> dict:
        """Get limiter statistics."""
        return {
            "name": self.name,
            "min_gap_seconds": self.min_gap_seconds,
            "calls": self.calls,
            "backlog_seconds": round(max(0.0, self._next_allowed_at - self._clock()), 3),
        }

    def reset(self) -> None:
        """Forget the reserved schedule."""
        logger.info("rate_limiter_reset", limiter=self.name)
        self._next_allowed_at = 0.0
        self.calls = 0
