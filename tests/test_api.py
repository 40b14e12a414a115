from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from credit_ledger.api.dependencies import build_services
from credit_ledger.app import create_app
from credit_ledger.cache.redis_cache import RedisAsyncCache
from credit_ledger.config import Settings
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.errors import GENERIC_ERROR_MESSAGE
from credit_ledger.notifications.queue import InMemoryNotificationQueue, RedisNotificationQueue
from credit_ledger.payments.memory import InMemoryPaymentProvider
from credit_ledger.services.rate_limiter import RedisRateLimiter

ADMIN_TOKEN = "admin-secret"


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        MONGO_URI=None,
        REDIS_URL=None,
        STRIPE_SECRET_KEY="",
        STRIPE_WEBHOOK_SECRET="whsec_test",
        ADMIN_API_TOKEN=ADMIN_TOKEN,
        EVENT_LOG_PATH=str(tmp_path / "events.jsonl"),
        REAPER_INTERVAL_SECONDS=0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def stack(tmp_path):
    provider = InMemoryPaymentProvider(webhook_secret="whsec_test")
    services = build_services(make_settings(tmp_path), db=InMemoryDBManager(), provider=provider)
    app = create_app(services=services)
    with TestClient(app) as client:
        yield client, services, provider


def user(user_id: str = "user-1") -> dict:
    return {"X-User-Id": user_id}


def post_completion(
    client,
    provider,
    metadata: dict,
    event_type: str = "checkout.session.completed",
    payment_status: str = "paid",
):
    raw = provider.completion_event(metadata, payment_status=payment_status, event_type=event_type)
    return client.post(
        "/credits/webhook",
        content=raw,
        headers={"Stripe-Signature": provider.sign(raw), "Content-Type": "application/json"},
    )


def test_purchase_then_usage_end_to_end(stack):
    client, _, provider = stack

    summary = client.get("/credits/summary", headers=user())
    assert summary.status_code == 200
    assert summary.json()["total"] == 0

    created = client.post("/credits/checkout", json={"priceId": "price_credits_100", "credits": 100}, headers=user())
    assert created.status_code == 200, created.text
    session_id = created.json()["session_id"]
    assert created.json()["payment_url"].startswith("https://pay.local/c/")

    metadata = {"type": "credits", "session_id": session_id, "user_id": "user-1", "credits": "100"}
    ack = post_completion(client, provider, metadata)
    assert ack.status_code == 200
    assert ack.json() == {"received": True, "outcome": "credited"}

    replay = post_completion(client, provider, metadata)
    assert replay.json()["outcome"] == "duplicate"

    balance = client.get("/credits/balance", headers=user())
    assert balance.json() == {"user_id": "user-1", "balance": 100}

    used = client.post("/credits/usage", json={"amount": 10, "order_id": "job-1"}, headers=user())
    assert used.status_code == 200
    assert used.json()["balance"] == 90

    summary = client.get("/credits/summary", headers=user()).json()
    assert (summary["total"], summary["recent_purchases"], summary["recent_usage"]) == (90, 100, 10)
    assert [d["reason"] for d in summary["details"]] == ["usage", "purchase"]
    assert summary["details"][1]["order_id"] == session_id


def test_webhook_rejects_bad_signature(stack):
    client, services, provider = stack
    raw = provider.completion_event({"type": "credits", "session_id": "s", "user_id": "u", "credits": "1"})

    response = client.post("/credits/webhook", content=raw, headers={"Stripe-Signature": "forged"})
    missing = client.post("/credits/webhook", content=raw)

    assert response.status_code == 400
    assert response.json() == {"error": "Security verification failed", "code": "INVALID_TOKEN"}
    assert missing.status_code == 400


def test_webhook_ignores_unrelated_events(stack):
    client, _, provider = stack
    ignored_type = post_completion(
        client, provider, {"type": "credits", "session_id": "s"}, event_type="invoice.paid"
    )
    ignored_meta = post_completion(client, provider, {"type": "order", "session_id": "s"})

    assert ignored_type.json() == {"received": True, "outcome": "ignored"}
    assert ignored_meta.json() == {"received": True, "outcome": "ignored"}


def test_webhook_for_unknown_session_needs_reconciliation(stack):
    client, services, provider = stack
    metadata = {"type": "credits", "session_id": "gone", "user_id": "user-1", "credits": "100"}

    ack = post_completion(client, provider, metadata)

    assert ack.status_code == 200
    assert ack.json()["outcome"] == "needs_reconciliation"
    assert services.queue.messages[0]["type"] == "support_alert"


def test_malformed_completion_is_invalid_input(stack):
    client, _, provider = stack
    ack = post_completion(client, provider, {"type": "credits", "session_id": "s", "credits": "lots"})
    assert ack.status_code == 400
    assert ack.json()["code"] == "INVALID_INPUT"


def test_identity_is_required(stack):
    client, _, _ = stack
    for response in [
        client.get("/credits/summary"),
        client.post("/credits/usage", json={"amount": 1}),
        client.post("/credits/checkout", json={"price_reference": "price_x", "credits": 1}),
    ]:
        assert response.status_code == 401
        assert response.json() == {"error": "Authentication required", "code": "AUTH_REQUIRED"}


def test_checkout_validation(stack):
    client, _, _ = stack
    for body in [
        {"price_reference": "price_x", "credits": 0},
        {"credits": 10},
        {"price_reference": "price_x", "credits": 10, "unexpected": True},
    ]:
        response = client.post("/credits/checkout", json=body, headers=user())
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid input provided", "code": "INVALID_INPUT"}


def test_checkout_provider_failure_is_sanitized(stack):
    client, _, _ = stack
    response = client.post("/credits/checkout", json={"price_reference": "bogus", "credits": 5}, headers=user())
    assert response.status_code == 502
    assert response.json() == {"error": "Payment processing failed", "code": "PAYMENT_FAILED"}


def test_checkout_is_rate_limited_per_user(stack):
    client, _, _ = stack
    body = {"price_reference": "price_credits_100", "credits": 100}

    statuses = [client.post("/credits/checkout", json=body, headers=user("busy")).status_code for _ in range(4)]
    assert statuses == [200, 200, 200, 429]

    blocked = client.post("/credits/checkout", json=body, headers=user("busy"))
    assert blocked.json() == {"error": "Too many requests. Please try again later.", "code": "RATE_LIMIT_EXCEEDED"}
    assert client.post("/credits/checkout", json=body, headers=user("other")).status_code == 200
    # Reads are not limited.
    assert client.get("/credits/summary", headers=user("busy")).status_code == 200


def test_usage_without_balance(stack):
    client, _, _ = stack
    response = client.post("/credits/usage", json={"amount": 5}, headers=user())
    assert response.status_code == 402
    assert response.json() == {"error": "Insufficient credits", "code": "INSUFFICIENT_CREDITS"}


def test_admin_endpoints_require_token(stack):
    client, _, _ = stack
    body = {"user_id": "user-9", "delta": 25, "description": "support grant"}

    assert client.post("/credits/adjust", json=body).status_code == 403
    denied = client.post("/credits/adjust", json=body, headers={"X-Admin-Token": "wrong"})
    assert denied.json() == {"error": "Access denied", "code": "ACCESS_DENIED"}

    granted = client.post("/credits/adjust", json=body, headers={"X-Admin-Token": ADMIN_TOKEN})
    assert granted.status_code == 200
    assert granted.json() == {"user_id": "user-9", "balance": 25}

    verified = client.get("/credits/verify/user-9", headers={"X-Admin-Token": ADMIN_TOKEN})
    assert verified.json()["running_sum_ok"] is True
    assert verified.json()["ledger_total"] == 25


def test_reaper_endpoints(stack):
    client, _, _ = stack
    admin = {"X-Admin-Token": ADMIN_TOKEN}

    purged = client.post("/credits/reaper/purge", headers=admin)
    assert purged.status_code == 200
    assert purged.json()["ok"] is True
    assert purged.json()["deleted_count"] == 0
    assert "cutoff" in purged.json()

    events = client.post("/credits/reaper/purge-events", headers=admin)
    assert events.status_code == 200
    assert client.post("/credits/reaper/purge").status_code == 403


def test_admin_disabled_without_configured_token(tmp_path):
    services = build_services(make_settings(tmp_path, ADMIN_API_TOKEN=""), db=InMemoryDBManager())
    with TestClient(create_app(services=services)) as client:
        response = client.post("/credits/reaper/purge", headers={"X-Admin-Token": ""})
    assert response.status_code == 403


class ExplodingStore(InMemoryDBManager):
    async def get_ledger_entries(self, *args, **kwargs):
        raise RuntimeError("cursor died on mongo-2.internal:27017")


def test_unexpected_errors_are_sanitized(tmp_path):
    services = build_services(make_settings(tmp_path), db=ExplodingStore())
    app = create_app(services=services)
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/credits/summary", headers=user())

    assert response.status_code == 500
    assert response.json() == {"error": GENERIC_ERROR_MESSAGE, "code": "INTERNAL_ERROR"}
    assert "mongo-2" not in response.text


def test_unpaid_completion_is_acknowledged_without_credit(stack):
    client, _, provider = stack
    created = client.post("/credits/checkout", json={"priceId": "price_credits_100", "credits": 100}, headers=user())
    session_id = created.json()["session_id"]
    metadata = {"type": "credits", "session_id": session_id, "user_id": "user-1", "credits": "100"}

    unpaid = post_completion(client, provider, metadata, payment_status="unpaid")
    assert unpaid.status_code == 200
    assert unpaid.json() == {"received": True, "outcome": "awaiting_payment"}
    assert client.get("/credits/balance", headers=user()).json()["balance"] == 0

    cleared = post_completion(
        client, provider, metadata, event_type="checkout.session.async_payment_succeeded"
    )
    assert cleared.json() == {"received": True, "outcome": "credited"}
    assert client.get("/credits/balance", headers=user()).json()["balance"] == 100


def test_confirm_endpoint_fulfills_paid_session(stack):
    client, _, provider = stack
    created = client.post("/credits/checkout", json={"priceId": "price_credits_100", "credits": 100}, headers=user())
    session_id = created.json()["session_id"]
    assert provider.requests[-1].success_url.endswith(f"?session_id={session_id}")

    waiting = client.post("/credits/confirm", json={"sessionId": session_id}, headers=user())
    assert waiting.status_code == 200
    assert waiting.json() == {"session_id": session_id, "outcome": "awaiting_payment", "credits": 100, "balance": 0}

    provider.mark_paid(created.json()["payment_url"].rsplit("/", 1)[-1])
    confirmed = client.post("/credits/confirm", json={"session_id": session_id}, headers=user())
    assert confirmed.json() == {"session_id": session_id, "outcome": "credited", "credits": 100, "balance": 100}

    foreign = client.post("/credits/confirm", json={"session_id": session_id}, headers=user("someone-else"))
    assert foreign.status_code == 404
    assert foreign.json() == {"error": "Invalid input provided", "code": "INVALID_INPUT"}
    assert client.post("/credits/confirm", json={"session_id": session_id}).status_code == 401


def test_redis_url_wires_shared_backends(tmp_path):
    services = build_services(
        make_settings(tmp_path, REDIS_URL="redis://localhost:6379/0"), db=InMemoryDBManager()
    )

    assert isinstance(services.cache, RedisAsyncCache)
    assert isinstance(services.queue, RedisNotificationQueue)
    assert isinstance(services.limiter, RedisRateLimiter)


def test_without_redis_alerts_stay_local(tmp_path):
    services = build_services(make_settings(tmp_path), db=InMemoryDBManager())
    assert isinstance(services.queue, InMemoryNotificationQueue)


@pytest.mark.asyncio
async def test_workers_without_shared_cache_read_balance_from_store(tmp_path):
    db = InMemoryDBManager()
    worker_a = build_services(make_settings(tmp_path), db=db)
    worker_b = build_services(make_settings(tmp_path), db=db)

    await worker_a.ledger.adjust_credits("user-1", 100)
    assert await worker_a.ledger.get_balance("user-1") == 100

    await worker_b.ledger.consume_credits("user-1", 10)
    assert await worker_a.ledger.get_balance("user-1") == 90
