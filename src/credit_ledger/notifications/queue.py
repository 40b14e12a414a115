from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

import redis.asyncio as redis


logger = logging.getLogger(__name__)


class AsyncNotificationQueue(ABC):
    """
    Outbound hand-off to whatever delivers operator mail. Payloads are
    plain JSON-compatible dicts with at least `type` and `to`.
    """

    @abstractmethod
    async def enqueue(self, payload: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        self.messages.append(payload)

    def drain(self) -> List[Dict[str, Any]]:
        drained, self.messages = self.messages, []
        return drained


class RedisNotificationQueue(AsyncNotificationQueue):
    """Pushes JSON payloads onto a Redis list consumed by the mail worker."""

    def __init__(self, client: "redis.Redis", list_key: str = "credit:notifications") -> None:
        self._client = client
        self._list_key = list_key

    @classmethod
    def from_url(cls, url: str, list_key: str = "credit:notifications") -> "RedisNotificationQueue":
        return cls(redis.from_url(url, decode_responses=True), list_key=list_key)

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        await self._client.rpush(self._list_key, json.dumps(payload, default=str))
        logger.debug("Queued %s notification on %s", payload.get("type"), self._list_key)
