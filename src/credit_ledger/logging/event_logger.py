from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.system_event import EventSeverity, SystemEvent


logger = logging.getLogger(__name__)

_LEVELS = {
    EventSeverity.INFO: logging.INFO,
    EventSeverity.WARN: logging.WARNING,
    EventSeverity.ERROR: logging.ERROR,
    EventSeverity.CRITICAL: logging.CRITICAL,
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


class SystemEventLogger:
    """
    Structured event logger that writes to a file, the database and the
    standard logger.

    File logging is append-only, line-delimited JSON for easier ingestion
    by log aggregators. DB logging uses the `SystemEvent` model and the
    configured `BaseDBManager`. Neither sink may break the calling flow.
    """

    def __init__(self, db: BaseDBManager, file_path: Optional[Path] = None) -> None:
        self._db = db
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def info(self, event: str, **kwargs: Any) -> SystemEvent:
        return await self.log(event, EventSeverity.INFO, **kwargs)

    async def warn(self, event: str, **kwargs: Any) -> SystemEvent:
        return await self.log(event, EventSeverity.WARN, **kwargs)

    async def error(self, event: str, **kwargs: Any) -> SystemEvent:
        return await self.log(event, EventSeverity.ERROR, **kwargs)

    async def critical(self, event: str, **kwargs: Any) -> SystemEvent:
        return await self.log(event, EventSeverity.CRITICAL, **kwargs)

    async def log(
        self,
        event: str,
        severity: EventSeverity,
        user_id: Optional[str] = None,
        path: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> SystemEvent:
        record = SystemEvent(
            event=event,
            severity=severity,
            user_id=user_id,
            path=path,
            payload=payload or {},
            correlation_id=correlation_id,
        )
        logger.log(
            _LEVELS[severity],
            "%s",
            event,
            extra={"user_id": user_id, "path": path, "payload": record.payload},
        )

        try:
            record = await self._db.add_system_event(record)
        except Exception:
            logger.exception("Failed to persist system event %r", event)

        if self._file_path is not None:
            try:
                line = json.dumps(record.serialize_for_db(), default=str)
                with self._file_path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as exc:
                logger.warning("Failed to write system event to %s: %s", self._file_path, exc)

        return record
