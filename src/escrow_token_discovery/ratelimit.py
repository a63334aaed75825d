"""Token bucket rate limiting shared by every upstream client.

Each upstream (RPC endpoint, block explorer, market-data API) owns one
limiter; callers await `acquire()` before every request.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        if max_requests_per_second <= 0:
            raise ValueError("max_requests_per_second must be > 0")
        return cls(
            max_tokens=max(1.0, max_requests_per_second),
            refill_rate=max_requests_per_second,
            tokens=max(1.0, max_requests_per_second),
            last_refill=time.monotonic(),
        )

    @classmethod
    def per_minute(cls, calls_per_minute: float) -> RateLimiter:
        """Create a rate limiter from a calls-per-minute budget."""
        return cls.create(calls_per_minute / 60.0)

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)
