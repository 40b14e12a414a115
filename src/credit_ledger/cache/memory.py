from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Tuple

from .base import AsyncCacheBackend


class InMemoryAsyncCache(AsyncCacheBackend):
    """
    Simple in-memory cache with optional TTL.
    Intended for tests and single-process deployments.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._store: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._clock = clock

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        value_ttl = self._store.get(key)
        if value_ttl is None:
            return None
        _, expires_at = value_ttl
        if expires_at is not None and expires_at <= self._clock():
            self._store.pop(key, None)
            return None
        return value_ttl

    def _expiry(self, ttl_seconds: int | None) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds is not None else None

    async def get(self, key: str) -> Optional[Any]:
        value_ttl = self._live(key)
        return value_ttl[0] if value_ttl is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        self._store[key] = (value, self._expiry(ttl_seconds))

    async def add(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        if self._live(key) is not None:
            return False
        self._store[key] = (value, self._expiry(ttl_seconds))
        return True

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)
