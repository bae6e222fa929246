"""Token-bucket rate limiter for broker calls."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("bullscan.fetcher")

# Absorbs float drift in the refill arithmetic.
_EPSILON = 1e-9


class RateLimiter:
    """Continuously refilling token bucket with a minimum call spacing.

    Tokens refill at ``max_per_minute / 60`` per second up to
    ``max_per_minute``. :meth:`wait` suspends (never busy-waits) until a
    token is available and consumes it, then additionally keeps at least
    *min_interval* seconds between consecutive calls.

    Args:
        max_per_minute: Bucket capacity and per-minute refill.
        min_interval: Minimum seconds between two granted calls.
        clock: Monotonic clock in seconds; injectable for tests.
        sleep: Coroutine used to suspend; injectable for tests.
    """

    def __init__(
        self,
        max_per_minute: int = 8,
        min_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_per_minute <= 0:
            raise ValueError("max_per_minute must be positive")
        self._capacity = float(max_per_minute)
        self._rate = max_per_minute / 60.0
        self._min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(max_per_minute)
        self._last_refill = clock()
        self._last_call: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
            self._last_refill = now

    async def wait(self) -> None:
        """Block until a call is allowed, then record it."""
        async with self._lock:
            self._refill()
            while self._tokens < 1 - _EPSILON:
                delay = (1 - self._tokens) / self._rate
                logger.debug("Rate limit reached, waiting %.2fs", delay)
                await self._sleep(delay)
                self._refill()
            self._tokens -= 1

            if self._last_call is not None:
                lag = self._clock() - self._last_call
                if lag < self._min_interval:
                    await self._sleep(self._min_interval - lag)
            self._last_call = self._clock()
