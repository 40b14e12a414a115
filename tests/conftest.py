from __future__ import annotations

import pytest

from credit_ledger.cache.memory import InMemoryAsyncCache
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.logging.event_logger import SystemEventLogger
from credit_ledger.notifications.queue import InMemoryNotificationQueue
from credit_ledger.payments.memory import InMemoryPaymentProvider
from credit_ledger.services.alert_service import SupportAlertService
from credit_ledger.services.checkout_service import CheckoutSessionManager
from credit_ledger.services.fulfillment_service import FulfillmentProcessor
from credit_ledger.services.ledger_store import LedgerStore


@pytest.fixture
def db():
    return InMemoryDBManager()


@pytest.fixture
def cache():
    return InMemoryAsyncCache()


@pytest.fixture
def events(db, tmp_path):
    return SystemEventLogger(db=db, file_path=tmp_path / "events.jsonl")


@pytest.fixture
def ledger(db, events, cache):
    return LedgerStore(db=db, events=events, cache=cache)


@pytest.fixture
def provider():
    return InMemoryPaymentProvider(webhook_secret="whsec_test")


@pytest.fixture
def queue():
    return InMemoryNotificationQueue()


@pytest.fixture
def alerts(queue, cache):
    return SupportAlertService(queue=queue, cache=cache, recipient="support@example.com")


@pytest.fixture
def checkout(db, provider, events):
    return CheckoutSessionManager(
        db=db,
        provider=provider,
        events=events,
        success_url="https://app.example.com/credits-success",
        cancel_url="https://app.example.com/purchase-credits",
    )


@pytest.fixture
def fulfillment(db, ledger, events, alerts, provider):
    return FulfillmentProcessor(db=db, ledger=ledger, events=events, alerts=alerts, provider=provider)
