"""Token-bucket rate limiter for Polymarket HTTP endpoints.

One bucket per endpoint family. Every Data API and CLOB request awaits
``rate_limiter.get(<family>).acquire()`` before going out, so a burst of
stop-loss price checks cannot starve the activity poll.

Callers reserve their slot synchronously (no await between refill and
debit) and then sleep off any debt, so waiters are served in arrival
order instead of racing for each refill.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any


@dataclass
class BucketConfig:
    """Refill rate and burst size for one endpoint family."""
    tokens_per_second: float
    max_burst: int
    name: str = ""


DEFAULT_LIMITS: dict[str, BucketConfig] = {
    # The activity poll and position lookups share this family.
    "data_api": BucketConfig(tokens_per_second=4.0, max_burst=8, name="Polymarket Data API"),
    "clob": BucketConfig(tokens_per_second=10.0, max_burst=20, name="Polymarket CLOB"),
}


class TokenBucket:
    """Async token bucket for a single endpoint family."""

    def __init__(self, config: BucketConfig, clock: Any = time.monotonic):
        self.config = config
        self._clock = clock
        self._tokens = float(config.max_burst)
        self._updated = clock()
        self.requests = 0
        self.throttled = 0
        self.waited_secs = 0.0

    def _reserve(self) -> float:
        """Take one token, possibly going into debt. Returns the delay owed."""
        now = self._clock()
        rate = self.config.tokens_per_second
        self._tokens = min(float(self.config.max_burst), self._tokens + (now - self._updated) * rate)
        self._updated = now
        self._tokens -= 1.0
        self.requests += 1
        if self._tokens >= 0:
            return 0.0
        return -self._tokens / rate

    async def acquire(self) -> float:
        """Wait for a slot. Returns how long the caller was held back."""
        delay = self._reserve()
        if delay > 0:
            self.throttled += 1
            self.waited_secs += delay
            await asyncio.sleep(delay)
        return delay

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.config.name,
            "requests": self.requests,
            "throttled": self.throttled,
            "waited_secs": round(self.waited_secs, 3),
        }


class RateLimiterRegistry:
    """Buckets keyed by endpoint family, created on first use."""

    def __init__(self, limits: dict[str, BucketConfig] | None = None):
        self._limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self._buckets: dict[str, TokenBucket] = {}

    def get(self, family: str) -> TokenBucket:
        bucket = self._buckets.get(family)
        if bucket is None:
            config = self._limits.get(family) or BucketConfig(5.0, 10, name=family)
            bucket = self._buckets[family] = TokenBucket(config)
        return bucket

    def stats(self) -> dict[str, dict[str, Any]]:
        return {family: b.snapshot() for family, b in self._buckets.items()}


# Global singleton
rate_limiter = RateLimiterRegistry()
