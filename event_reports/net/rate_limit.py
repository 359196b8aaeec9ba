"""Token-bucket pacing for upstream calls."""
import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class AcquireResult:
    rate_limited: bool
    wait_ms: int


class TokenBucket:
    """
    Token bucket allowing bursts up to `burst` while holding a steady `qps` rate.

    Tokens refill continuously and stay within [0, burst]. A non-positive qps
    disables pacing: every acquire resets the bucket to full.
    """

    def __init__(self, qps: float = 2.0, burst: int = 4,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Sleep = asyncio.sleep):
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._sleep = sleep
        self.tokens = float(burst)
        self.last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        if self.qps <= 0:
            self.tokens = float(self.burst)
            self.last_refill = now
            return
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(float(self.burst), self.tokens + elapsed * self.qps)
        self.last_refill = now

    async def acquire(self) -> AcquireResult:
        """Take one token, sleeping until one is available."""
        async with self._lock:
            self._refill()
            if self.tokens >= 1:
                self.tokens -= 1
                return AcquireResult(rate_limited=False, wait_ms=0)

            wait_ms = math.ceil((1 - self.tokens) / self.qps * 1000)
            logger.debug(f"Token bucket empty; waiting {wait_ms}ms")
            await self._sleep(wait_ms / 1000)
            self._refill()
            self.tokens = max(0.0, self.tokens - 1)
            return AcquireResult(rate_limited=wait_ms > 0, wait_ms=wait_ms)
