from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as redis

from .base import AsyncCacheBackend


class RedisAsyncCache(AsyncCacheBackend):
    """
    Cache shared by every worker. Values are stored as compact JSON, so
    only JSON-compatible values round-trip unchanged.
    """

    def __init__(self, client: "redis.Redis", prefix: str = "credit:cache") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "credit:cache") -> "RedisAsyncCache":
        return cls(redis.from_url(url, decode_responses=True), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    @staticmethod
    def _dump(value: Any) -> str:
        return json.dumps(value, separators=(",", ":"), default=str)

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        await self._client.set(self._key(key), self._dump(value), ex=ttl_seconds)

    async def add(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        stored = await self._client.set(self._key(key), self._dump(value), ex=ttl_seconds, nx=True)
        return bool(stored)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))
