"""
FastAPI application for the credit ledger.

- `/credits/*` routes: checkout creation, payment webhook, balance and
  summary reads, usage, admin adjustments and reaper triggers.
- Checkout creation is rate-limited per identity (X-User-Id, falling back
  to the client address).
- With CREDIT_REAPER_INTERVAL_SECONDS > 0 the reaper runs in the
  background for the lifetime of the app.

Run:
  uvicorn credit_ledger.app:create_app --factory --reload
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from .api.dependencies import CreditServices, build_services
from .api.errors import install_error_handlers
from .api.middleware import RateLimitMiddleware
from .api.router import router
from .config import Settings, settings as default_settings
from .db.mongo import MongoDBManager
from .logging.event_logger import configure_logging


logger = logging.getLogger(__name__)


def create_app(
    config: Optional[Settings] = None, services: Optional[CreditServices] = None
) -> FastAPI:
    config = config or (services.settings if services is not None else default_settings)
    configure_logging(config.LOG_LEVEL)
    services = services or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(services.db, MongoDBManager):
            await services.db.ensure_indexes()

        stop = asyncio.Event()
        reaper_task: Optional[asyncio.Task] = None
        if config.REAPER_INTERVAL_SECONDS > 0:
            logger.info("Starting reaper every %ds", config.REAPER_INTERVAL_SECONDS)
            reaper_task = asyncio.create_task(
                services.reaper.run_periodically(config.REAPER_INTERVAL_SECONDS, stop)
            )
        try:
            yield
        finally:
            stop.set()
            if reaper_task is not None:
                await reaper_task

    app = FastAPI(title="Credit ledger", lifespan=lifespan)
    app.state.credit_services = services

    install_error_handlers(app)
    app.add_middleware(
        RateLimitMiddleware,
        limiter=services.limiter,
        path_prefix="/credits/checkout",
        user_id_header="X-User-Id",
        max_attempts=config.RATE_LIMIT_MAX_ATTEMPTS,
        window=timedelta(minutes=config.RATE_LIMIT_WINDOW_MINUTES),
    )
    app.include_router(router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app
