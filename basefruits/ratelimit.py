"""Rate limiting: per-client inbound buckets and outbound delivery pacing."""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from typing import Protocol

from .config import Settings


class Bucket:
    __slots__ = ("tokens", "updated")

    def __init__(self, capacity: int) -> None:
        self.tokens = float(capacity)
        self.updated = time.monotonic()

    def refill(self, rps: float, burst: int) -> None:
        now = time.monotonic()
        elapsed = now - self.updated
        self.tokens = min(float(burst), self.tokens + elapsed * max(rps, 0.0))
        self.updated = now


_buckets: defaultdict[str, Bucket | None] = defaultdict(lambda: None)


def allow(key: str, rps: float, burst: int) -> bool:
    """Return True when an inbound caller can proceed under the rate limit."""

    bucket = _buckets.get(key)
    if bucket is None:
        bucket = Bucket(burst)
        _buckets[key] = bucket
    bucket.refill(rps, burst)
    if bucket.tokens >= 1.0:
        bucket.tokens -= 1.0
        return True
    return False


class DeliveryLimiter(Protocol):
    async def acquire(self) -> None: ...


class FixedDelayLimiter:
    """Keep at least ``interval`` seconds between consecutive deliveries."""

    def __init__(self, interval: float) -> None:
        self.interval = max(interval, 0.0)
        self._next_at: float | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            if self._next_at is not None and now < self._next_at:
                await asyncio.sleep(self._next_at - now)
                now = time.monotonic()
            self._next_at = now + self.interval


class TokenBucketLimiter:
    """Async token bucket: ``burst`` deliveries at once, ``rps`` sustained."""

    def __init__(self, rps: float, burst: int) -> None:
        self.rps = rps
        self.burst = max(burst, 1)
        self._bucket = Bucket(self.burst)
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            self._bucket.refill(self.rps, self.burst)
            if self._bucket.tokens < 1.0:
                await asyncio.sleep((1.0 - self._bucket.tokens) / self.rps)
                self._bucket.refill(self.rps, self.burst)
            self._bucket.tokens -= 1.0


def build_limiter(settings: Settings) -> DeliveryLimiter:
    if settings.BROADCAST_RATE_LIMITER == "token_bucket":
        return TokenBucketLimiter(settings.BROADCAST_RPS, settings.BROADCAST_BURST)
    return FixedDelayLimiter(settings.BROADCAST_DELAY_SECONDS)
