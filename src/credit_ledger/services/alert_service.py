from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, Optional

from ..cache.base import AsyncCacheBackend
from ..models.base import utcnow
from ..notifications.queue import AsyncNotificationQueue


logger = logging.getLogger(__name__)


class SupportAlertService:
    """
    Sends operator alerts through the notification queue, throttling
    repeats of the same alert signature (subject, code, path).

    The throttle lives in the configured cache; with the in-memory cache it
    is process-local, so use a shared cache when running several workers.
    """

    def __init__(
        self,
        queue: AsyncNotificationQueue,
        cache: AsyncCacheBackend,
        recipient: str,
        throttle_seconds: int = 300,
    ) -> None:
        self._queue = queue
        self._cache = cache
        self._recipient = recipient
        self._throttle_seconds = throttle_seconds

    async def send_alert(self, subject: str, details: Optional[Dict[str, Any]] = None) -> bool:
        """Returns True if the alert was queued, False if it was throttled."""
        details = details or {}
        signature = self._signature(subject, details)
        if not await self._cache.add(signature, True, ttl_seconds=self._throttle_seconds):
            logger.info("Throttled duplicate support alert: %s", subject)
            return False

        await self._queue.enqueue(
            {
                "type": "support_alert",
                "to": self._recipient,
                "subject": subject,
                "details": details,
                "created_at": utcnow().isoformat(),
            }
        )
        logger.warning("Support alert queued: %s", subject)
        return True

    @staticmethod
    def _signature(subject: str, details: Dict[str, Any]) -> str:
        raw = "%s:%s:%s" % (
            subject,
            json.dumps(details.get("code", ""), default=str),
            details.get("path", ""),
        )
        return "alert:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()
