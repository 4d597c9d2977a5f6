"""
Outbound rate limiting for the batch runner.

RateLimiter is an async token bucket: at most `rate` acquisitions per `per`
seconds, with bursts capped at `rate`. The default (1 per 20 s) spaces domain
evaluations the way a fixed inter-domain delay would.
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional


class RateLimiter:
    def __init__(
        self,
        rate: int = 1,
        per: float = 20.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate < 1:
            raise ValueError("rate must be >= 1")
        if per < 0:
            raise ValueError("per must be >= 0")
        self.rate = rate
        self.per = per
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(rate)
        self._updated = clock()
        self._lock: Optional[asyncio.Lock] = None

    def _refill(self) -> None:
        now = self._clock()
        if self.per == 0:
            self._tokens = float(self.rate)
        else:
            elapsed = max(0.0, now - self._updated)
            self._tokens = min(float(self.rate), self._tokens + elapsed * self.rate / self.per)
        self._updated = now

    def _wait_time(self) -> float:
        """Seconds until one token is available (0 if one is available now)."""
        if self._tokens >= 1 - 1e-9 or self.per == 0:
            return 0.0
        return (1 - self._tokens) * self.per / self.rate

    async def acquire(self) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        # waiters queue on the lock so tokens are handed out in arrival order
        async with self._lock:
            while True:
                self._refill()
                delay = self._wait_time()
                if delay <= 0:
                    self._tokens = max(0.0, self._tokens - 1)
                    return
                await self._sleep(delay)

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None
