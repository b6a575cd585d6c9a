"""Fixed-window rate limiting for push-payment initiate/resend calls."""

import abc
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime


class RateLimiter(abc.ABC):
    """Interface shared by the in-memory and Redis-backed limiters."""

    def __init__(self, limit: int, window_seconds: int):
        self.limit = limit
        self.window_seconds = window_seconds

    @abc.abstractmethod
    async def check(self, key: str) -> RateLimitResult:
        """Count one hit against ``key`` and report whether it is allowed."""


@dataclass
class _Bucket:
    count: int
    reset_at: float


class InMemoryRateLimiter(RateLimiter):
    """Process-local limiter. State is lost on restart, so it fails open.

    Expired buckets are swept at most once per window, so memory stays
    bounded by the number of origins seen within roughly two windows.
    """

    def __init__(self, limit: int, window_seconds: int, clock: Callable[[], float] = time.time):
        super().__init__(limit, window_seconds)
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + window_seconds

    def _sweep(self, now: float) -> None:
        expired = [key for key, bucket in self._buckets.items() if now > bucket.reset_at]
        for key in expired:
            del self._buckets[key]
        if expired:
            logger.debug("Dropped %s expired rate-limit buckets", len(expired))
        self._next_sweep = now + self.window_seconds

    async def check(self, key: str) -> RateLimitResult:
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)
            bucket = self._buckets.get(key)
            if bucket is None or now > bucket.reset_at:
                bucket = _Bucket(count=0, reset_at=now + self.window_seconds)
                self._buckets[key] = bucket

            if bucket.count >= self.limit:
                logger.warning("Rate limit exceeded for %s (%s/%s)", key, bucket.count, self.limit)
                return RateLimitResult(False, 0, _as_datetime(bucket.reset_at))

            bucket.count += 1
            return RateLimitResult(True, self.limit - bucket.count, _as_datetime(bucket.reset_at))

    def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)


class RedisRateLimiter(RateLimiter):
    """Limiter shared between instances through Redis ``INCR``/``EXPIRE``."""

    def __init__(self, redis, limit: int, window_seconds: int, prefix: str = "ratelimit:"):
        super().__init__(limit, window_seconds)
        self._redis = redis
        self._prefix = prefix

    async def check(self, key: str) -> RateLimitResult:
        redis_key = f"{self._prefix}{key}"
        count = await self._redis.incr(redis_key)
        if count == 1:
            await self._redis.expire(redis_key, self.window_seconds)
        ttl = await self._redis.ttl(redis_key)
        if ttl is None or ttl < 0:
            # Key lost its expiry (e.g. a crash between INCR and EXPIRE)
            await self._redis.expire(redis_key, self.window_seconds)
            ttl = self.window_seconds

        reset_at = _as_datetime(time.time() + ttl)
        if count > self.limit:
            logger.warning("Rate limit exceeded for %s (%s/%s)", key, count, self.limit)
            return RateLimitResult(False, 0, reset_at)
        return RateLimitResult(True, self.limit - count, reset_at)


def _as_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def build_rate_limiter(limit: int, window_seconds: int, redis_url: str = None) -> RateLimiter:
    if redis_url:
        from redis import asyncio as aioredis

        return RedisRateLimiter(aioredis.from_url(redis_url), limit, window_seconds)
    return InMemoryRateLimiter(limit, window_seconds)
