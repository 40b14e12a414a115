from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

from fastapi import Header, Request

from ..cache.base import AsyncCacheBackend
from ..cache.memory import InMemoryAsyncCache
from ..cache.redis_cache import RedisAsyncCache
from ..config import Settings, settings as default_settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..errors import AccessDeniedError, AuthenticationRequiredError
from ..logging.event_logger import SystemEventLogger
from ..notifications.queue import (
    AsyncNotificationQueue,
    InMemoryNotificationQueue,
    RedisNotificationQueue,
)
from ..payments.base import PaymentProvider
from ..payments.memory import InMemoryPaymentProvider
from ..payments.stripe_provider import StripePaymentProvider
from ..services.alert_service import SupportAlertService
from ..services.checkout_service import SESSION_ID_PLACEHOLDER, CheckoutSessionManager
from ..services.fulfillment_service import FulfillmentProcessor
from ..services.ledger_store import LedgerStore
from ..services.rate_limiter import InMemoryRateLimiter, RateLimiter, RedisRateLimiter
from ..services.reaper_service import AbandonedSessionReaper


logger = logging.getLogger(__name__)


@dataclass
class CreditServices:
    """Everything the HTTP layer needs, wired once per application."""

    settings: Settings
    db: BaseDBManager
    cache: AsyncCacheBackend
    queue: AsyncNotificationQueue
    events: SystemEventLogger
    provider: PaymentProvider
    limiter: RateLimiter
    ledger: LedgerStore
    checkout: CheckoutSessionManager
    fulfillment: FulfillmentProcessor
    reaper: AbandonedSessionReaper
    alerts: SupportAlertService


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def _create_db_manager(config: Settings) -> BaseDBManager:
    if config.MONGO_URI:
        return MongoDBManager.from_client_uri(
            config.MONGO_URI, config.MONGO_DB, timeout_seconds=config.STORE_TIMEOUT_SECONDS
        )
    logger.warning("CREDIT_MONGO_URI not set; using the in-memory store")
    return InMemoryDBManager()


def _create_provider(config: Settings) -> PaymentProvider:
    if config.STRIPE_SECRET_KEY:
        return StripePaymentProvider(
            api_key=config.STRIPE_SECRET_KEY,
            webhook_secret=config.STRIPE_WEBHOOK_SECRET,
            timeout_seconds=config.PROVIDER_TIMEOUT_SECONDS,
        )
    logger.warning("CREDIT_STRIPE_SECRET_KEY not set; using the local payment provider")
    return InMemoryPaymentProvider(webhook_secret=config.STRIPE_WEBHOOK_SECRET or "whsec_local")


def _create_limiter(config: Settings) -> RateLimiter:
    if config.REDIS_URL:
        return RedisRateLimiter.from_url(config.REDIS_URL)
    return InMemoryRateLimiter()


def _create_cache(config: Settings) -> Optional[AsyncCacheBackend]:
    """Shared cache when Redis is configured, None otherwise."""
    if config.REDIS_URL:
        return RedisAsyncCache.from_url(config.REDIS_URL)
    return None


def _create_queue(config: Settings) -> AsyncNotificationQueue:
    if config.REDIS_URL:
        return RedisNotificationQueue.from_url(config.REDIS_URL)
    logger.warning("CREDIT_REDIS_URL not set; support alerts stay in this process")
    return InMemoryNotificationQueue()


def build_services(
    config: Optional[Settings] = None,
    *,
    db: Optional[BaseDBManager] = None,
    provider: Optional[PaymentProvider] = None,
    limiter: Optional[RateLimiter] = None,
    cache: Optional[AsyncCacheBackend] = None,
    queue: Optional[AsyncNotificationQueue] = None,
) -> CreditServices:
    """
    Wire the stack from settings. Any collaborator can be passed in
    explicitly, which is how tests swap in doubles.

    Without a shared cache the balance is read from the store every time
    and the alert throttle falls back to a process-local cache.
    """
    config = config or default_settings
    db = db or _create_db_manager(config)
    shared_cache = cache or _create_cache(config)
    cache = shared_cache or InMemoryAsyncCache()
    queue = queue or _create_queue(config)
    provider = provider or _create_provider(config)
    limiter = limiter or _create_limiter(config)

    events = SystemEventLogger(
        db=db, file_path=Path(config.EVENT_LOG_PATH) if config.EVENT_LOG_PATH else None
    )
    alerts = SupportAlertService(
        queue=queue,
        cache=cache,
        recipient=config.SUPPORT_EMAIL,
        throttle_seconds=config.ALERT_THROTTLE_SECONDS,
    )
    ledger = LedgerStore(
        db=db,
        events=events,
        cache=shared_cache,
        summary_window=timedelta(days=config.SUMMARY_WINDOW_DAYS),
        summary_max_entries=config.SUMMARY_MAX_ENTRIES,
    )
    site = config.SITE_URL.rstrip("/")
    checkout = CheckoutSessionManager(
        db=db,
        provider=provider,
        events=events,
        success_url=f"{site}{config.CHECKOUT_SUCCESS_PATH}?session_id={SESSION_ID_PLACEHOLDER}",
        cancel_url=f"{site}{config.CHECKOUT_CANCEL_PATH}",
    )
    fulfillment = FulfillmentProcessor(
        db=db, ledger=ledger, events=events, alerts=alerts, provider=provider
    )
    reaper = AbandonedSessionReaper(
        db=db,
        events=events,
        session_max_age=timedelta(hours=config.ABANDONED_SESSION_MAX_AGE_HOURS),
        event_max_age=timedelta(days=config.ERROR_EVENT_RETENTION_DAYS),
        retention=config.ABANDONED_SESSION_RETENTION,
    )
    return CreditServices(
        settings=config,
        db=db,
        cache=cache,
        queue=queue,
        events=events,
        provider=provider,
        limiter=limiter,
        ledger=ledger,
        checkout=checkout,
        fulfillment=fulfillment,
        reaper=reaper,
        alerts=alerts,
    )


def get_services(request: Request) -> CreditServices:
    return request.app.state.credit_services


async def get_auth_context(
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
) -> AuthContext:
    """Identity is asserted by the upstream gateway in `X-User-Id`."""
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationRequiredError("missing X-User-Id header")
    return AuthContext(user_id=x_user_id.strip(), email=x_user_email or None)


async def require_admin(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    expected = get_services(request).settings.ADMIN_API_TOKEN
    if not expected:
        raise AccessDeniedError("admin endpoints are disabled: CREDIT_ADMIN_API_TOKEN not set")
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        raise AccessDeniedError("bad admin token")
