from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class EventSeverity(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


class SystemEvent(DBSerializableModel):
    """
    Structured diagnostic record persisted to DB and mirrored to the file log.
    Purged after the configured retention period.
    """

    collection_name: ClassVar[str] = "system_events"

    id: Optional[str] = Field(default=None)
    event: str
    severity: EventSeverity = EventSeverity.INFO
    user_id: Optional[str] = None
    path: Optional[str] = Field(default=None, description="Request path or job name.")
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
