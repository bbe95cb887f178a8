"""Sliding-window rate limiter for job starts."""
import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque

import structlog

logger = structlog.get_logger()


class RateLimiter:
    """Allows at most ``max_calls`` acquisitions in any ``period`` seconds."""

    def __init__(
        self,
        max_calls: int,
        period: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_calls <= 0 or period <= 0:
            raise ValueError("Rate limit and period must be positive")
        self.max_calls = max_calls
        self.period = period
        self._clock = clock
        self._sleep = sleep
        self._calls: Deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a call is allowed, then record it."""
        async with self._lock:
            while True:
                now = self._clock()
                while self._calls and now - self._calls[0] >= self.period:
                    self._calls.popleft()
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return
                wait = self.period - (now - self._calls[0])
                logger.debug("rate_limit_wait", wait_seconds=round(wait, 3))
                await self._sleep(wait)
