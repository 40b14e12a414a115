from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class AsyncCacheBackend(ABC):
    """
    Minimal async cache abstraction used for frequently accessed data
    such as user credit balances, and for short-lived throttle markers.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def add(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """Set `key` only if it is absent (or expired). Returns True if stored."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...
