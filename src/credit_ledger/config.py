"""
Credit ledger configuration using Pydantic Settings.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables prefixed with ``CREDIT_``."""

    # Storage
    MONGO_URI: Optional[str] = None
    MONGO_DB: str = "credit_ledger"
    STORE_TIMEOUT_SECONDS: float = 5.0

    # Logging
    LOG_LEVEL: str = "INFO"
    EVENT_LOG_PATH: str = "logs/system_events.jsonl"

    # Payment provider
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    SITE_URL: str = "http://localhost:3000"
    CHECKOUT_SUCCESS_PATH: str = "/credits-success"
    CHECKOUT_CANCEL_PATH: str = "/purchase-credits"

    # Abuse control
    RATE_LIMIT_MAX_ATTEMPTS: int = 3
    RATE_LIMIT_WINDOW_MINUTES: int = 60
    REDIS_URL: Optional[str] = None

    # Garbage collection
    ABANDONED_SESSION_MAX_AGE_HOURS: int = 48
    ABANDONED_SESSION_RETENTION: Literal["delete", "mark"] = "delete"
    ERROR_EVENT_RETENTION_DAYS: int = 30
    REAPER_INTERVAL_SECONDS: int = 0

    # Summary query
    SUMMARY_WINDOW_DAYS: int = 30
    SUMMARY_MAX_ENTRIES: int = 50

    # Support alerts
    ALERT_THROTTLE_SECONDS: int = 300
    SUPPORT_EMAIL: str = "support@localhost"

    # Operational endpoints (reaper trigger, manual adjustments)
    ADMIN_API_TOKEN: str = ""

    model_config = SettingsConfigDict(env_prefix="CREDIT_", env_file=".env", extra="ignore")


settings = Settings()
