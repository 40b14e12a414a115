from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Literal, Optional

from pydantic import BaseModel

from ..db.base import BaseDBManager
from ..logging.event_logger import SystemEventLogger
from ..models.base import utcnow


logger = logging.getLogger(__name__)


class ReaperResult(BaseModel):
    deleted_count: int
    cutoff: datetime


class AbandonedSessionReaper:
    """
    Garbage collection for checkout sessions that never completed and for
    old diagnostic events.

    Each purge is one filtered store operation evaluated at call time, so
    repeated or overlapping runs converge on the same state.
    """

    def __init__(
        self,
        db: BaseDBManager,
        events: Optional[SystemEventLogger] = None,
        session_max_age: timedelta = timedelta(hours=48),
        event_max_age: timedelta = timedelta(days=30),
        retention: Literal["delete", "mark"] = "delete",
    ) -> None:
        self._db = db
        self._events = events
        self._session_max_age = session_max_age
        self._event_max_age = event_max_age
        self._retention = retention

    async def purge_abandoned(
        self, max_age: Optional[timedelta] = None, as_of: Optional[datetime] = None
    ) -> ReaperResult:
        """
        Remove (or mark abandoned) pending sessions created before
        `as_of - max_age`. Completed sessions are never touched.
        """
        cutoff = (as_of or utcnow()) - (max_age if max_age is not None else self._session_max_age)
        count = await self._db.purge_pending_sessions(cutoff, mark_only=self._retention == "mark")

        logger.info(
            "%s %d abandoned checkout sessions older than %s",
            "Marked" if self._retention == "mark" else "Deleted",
            count,
            cutoff.isoformat(),
        )
        if self._events is not None and count:
            await self._events.info(
                "Abandoned checkout sessions purged",
                path="purge-abandoned-checkouts",
                payload={"count": count, "cutoff": cutoff.isoformat(), "retention": self._retention},
            )
        return ReaperResult(deleted_count=count, cutoff=cutoff)

    async def purge_error_events(
        self, max_age: Optional[timedelta] = None, as_of: Optional[datetime] = None
    ) -> ReaperResult:
        cutoff = (as_of or utcnow()) - (max_age if max_age is not None else self._event_max_age)
        count = await self._db.purge_system_events(cutoff)
        logger.info("Deleted %d system events older than %s", count, cutoff.isoformat())
        return ReaperResult(deleted_count=count, cutoff=cutoff)

    async def run_periodically(self, interval_seconds: float, stop: asyncio.Event) -> None:
        """Run both purges every `interval_seconds` until `stop` is set."""
        while not stop.is_set():
            try:
                await self.purge_abandoned()
                await self.purge_error_events()
            except Exception:
                logger.exception("Reaper run failed; will retry next interval")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
