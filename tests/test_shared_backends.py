from __future__ import annotations

import json

import pytest

from credit_ledger.cache.redis_cache import RedisAsyncCache
from credit_ledger.models.ledger import LedgerReason
from credit_ledger.notifications.queue import RedisNotificationQueue
from credit_ledger.services.alert_service import SupportAlertService
from credit_ledger.services.ledger_store import LedgerStore


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the cache and queue."""

    def __init__(self) -> None:
        self.store: dict = {}
        self.ttls: dict = {}
        self.lists: dict = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, key):
        return int(self.store.pop(key, None) is not None)

    async def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])


@pytest.mark.asyncio
async def test_redis_cache_stores_json_with_ttl():
    client = FakeRedis()
    cache = RedisAsyncCache(client, prefix="t")

    await cache.set("balance", {"sequence": 3, "balance": 42}, ttl_seconds=60)

    assert client.store["t:balance"] == '{"sequence":3,"balance":42}'
    assert client.ttls["t:balance"] == 60
    assert await cache.get("balance") == {"sequence": 3, "balance": 42}
    assert await cache.get("missing") is None

    assert await cache.add("marker", True, ttl_seconds=5) is True
    assert await cache.add("marker", True, ttl_seconds=5) is False

    await cache.delete("balance")
    assert await cache.get("balance") is None


@pytest.mark.asyncio
async def test_two_ledger_stores_share_one_balance_cache(db, events):
    cache = RedisAsyncCache(FakeRedis())
    worker_a = LedgerStore(db=db, events=events, cache=cache)
    worker_b = LedgerStore(db=db, events=events, cache=cache)

    await worker_a.append_entry("user-1", 100, LedgerReason.PURCHASE, order_id="s-1")
    assert await worker_a.get_balance("user-1") == 100

    await worker_b.consume_credits("user-1", 10)

    assert await worker_a.get_balance("user-1") == 90
    assert await worker_b.get_balance("user-1") == 90


@pytest.mark.asyncio
async def test_alert_throttle_is_shared_between_workers():
    client = FakeRedis()
    cache = RedisAsyncCache(client)
    queue = RedisNotificationQueue(client, list_key="alerts")
    first = SupportAlertService(queue=queue, cache=cache, recipient="ops@example.com")
    second = SupportAlertService(queue=queue, cache=cache, recipient="ops@example.com")
    details = {"code": "s-1", "path": "payment-webhook", "session_id": "s-1"}

    assert await first.send_alert("Payment needs reconciliation", details) is True
    assert await second.send_alert("Payment needs reconciliation", details) is False

    queued = [json.loads(raw) for raw in client.lists["alerts"]]
    assert len(queued) == 1
    assert queued[0]["type"] == "support_alert"
    assert queued[0]["to"] == "ops@example.com"
    assert queued[0]["details"]["session_id"] == "s-1"
