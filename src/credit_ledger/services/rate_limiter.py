"""
Identity-keyed rate limiting.

The in-memory limiter only protects a single process. Deployments with more
than one worker should use `RedisRateLimiter`, which keeps the same
check-and-increment contract on a shared store with per-key expiry.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Callable, Dict, Optional, Union

import redis.asyncio as redis
from pydantic import BaseModel


logger = logging.getLogger(__name__)

Window = Union[timedelta, float]


def normalize_key(identity: str) -> str:
    return identity.strip().lower()


def _window_seconds(window: Window) -> float:
    return window.total_seconds() if isinstance(window, timedelta) else float(window)


class RateLimitRecord(BaseModel):
    key: str
    count: int
    reset_at: float


class RateLimiter(ABC):
    @abstractmethod
    async def check(self, key: str, max_attempts: int, window: Window) -> bool:
        """Count one attempt for `key`; True means the caller is blocked."""
        ...

    @abstractmethod
    async def remaining_attempts(self, key: str, max_attempts: int) -> int:
        ...


class InMemoryRateLimiter(RateLimiter):
    """
    Fixed-window counter per normalized key.

    Expired records are evicted lazily: each call sweeps the map with
    probability `eviction_probability`.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        eviction_probability: float = 0.1,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._records: Dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._eviction_probability = eviction_probability
        self._rng = rng or random.Random()

    def __len__(self) -> int:
        return len(self._records)

    async def check(self, key: str, max_attempts: int, window: Window) -> bool:
        return self.check_sync(key, max_attempts, window)

    def check_sync(self, key: str, max_attempts: int, window: Window) -> bool:
        key = normalize_key(key)
        with self._lock:
            now = self._clock()
            if self._rng.random() < self._eviction_probability:
                self._evict_expired(now)

            record = self._records.get(key)
            if record is None or record.reset_at <= now:
                self._records[key] = RateLimitRecord(
                    key=key, count=1, reset_at=now + _window_seconds(window)
                )
                return False

            record.count += 1
            if record.count > max_attempts:
                logger.info("Rate limit exceeded for %s: %d/%d", key, record.count, max_attempts)
                return True
            return False

    async def remaining_attempts(self, key: str, max_attempts: int) -> int:
        key = normalize_key(key)
        with self._lock:
            record = self._records.get(key)
            if record is None or record.reset_at <= self._clock():
                return max_attempts
            return max(0, max_attempts - record.count)

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, r in self._records.items() if r.reset_at <= now]
        for k in expired:
            del self._records[k]


class RedisRateLimiter(RateLimiter):
    """
    Shared-store limiter. `SET NX EX` opens the window and `INCR` counts the
    attempt inside one MULTI block, so concurrent callers on any worker see
    distinct counts.
    """

    def __init__(self, client: "redis.Redis", prefix: str = "credit:rate") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "credit:rate") -> "RedisRateLimiter":
        return cls(redis.from_url(url, decode_responses=True), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{normalize_key(key)}"

    async def check(self, key: str, max_attempts: int, window: Window) -> bool:
        redis_key = self._key(key)
        ttl = max(1, int(_window_seconds(window)))
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(redis_key, 0, ex=ttl, nx=True)
            pipe.incr(redis_key)
            _, count = await pipe.execute()
        blocked = int(count) > max_attempts
        if blocked:
            logger.info("Rate limit exceeded for %s: %s/%d", redis_key, count, max_attempts)
        return blocked

    async def remaining_attempts(self, key: str, max_attempts: int) -> int:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return max_attempts
        return max(0, max_attempts - int(raw))


_default_limiter = InMemoryRateLimiter()


def is_rate_limited(identity: str, max_attempts: int = 3, window_minutes: int = 60) -> bool:
    """Process-wide check used by identity-bound flows (contact, purchase)."""
    return _default_limiter.check_sync(identity, max_attempts, timedelta(minutes=window_minutes))
