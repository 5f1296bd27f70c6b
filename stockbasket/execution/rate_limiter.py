"""
Token bucket rate limiter for broker order placement.

Each adapter instance owns one limiter, so pacing is per account. Waiting
happens outside the lock: concurrent callers take on "debt" against future
tokens and sleep for their share in parallel.

Example:
    >>> limiter = RateLimiter(rate=10, capacity=1)
    >>> async with limiter:
    ...     await broker.place_order(order)
"""

import asyncio
import functools
import time
from typing import Awaitable, Callable, Optional

from stockbasket.utils.logging_config import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """
    Token bucket rate limiter.

    Attributes:
        rate: Tokens added per second
        capacity: Bucket size (burst allowed after idling)
        tokens: Tokens currently available (negative while in debt)
    """

    def __init__(
        self,
        rate: float,
        capacity: float = 1,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if rate <= 0:
            raise ValueError(f"Rate must be positive, got {rate}")
        if capacity < 1:
            raise ValueError(f"Capacity must be at least 1, got {capacity}")

        self.rate = float(rate)
        self.capacity = float(capacity)
        self.tokens = float(capacity)
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self.last_refill = self._clock()
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
            self.last_refill = now

    async def acquire(self) -> float:
        """
        Take one token, sleeping until it is available.

        Returns:
            Seconds waited (0.0 when a token was free)
        """
        async with self._lock:
            self._refill(self._clock())
            self.tokens -= 1.0
            wait_time = -self.tokens / self.rate if self.tokens < 0 else 0.0

        if wait_time > 0:
            logger.debug(f"Rate limit: sleeping {wait_time:.3f}s")
            await self._sleep(wait_time)

        return wait_time

    def limit(self, func):
        """Decorator to rate limit a coroutine function."""

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            await self.acquire()
            return await func(*args, **kwargs)

        return wrapper

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        pass

    def __repr__(self) -> str:
        return f"RateLimiter(rate={self.rate}, capacity={self.capacity})"
