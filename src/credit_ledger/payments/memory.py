from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .base import PAID, HostedCheckout, HostedCheckoutRequest, PaymentProvider, ProviderCheckout, ProviderEvent
from ..errors import InvalidTokenError, PaymentFailedError


class InMemoryPaymentProvider(PaymentProvider):
    """
    Provider double for tests and local development.

    Notifications are signed with HMAC-SHA256 over the raw body using a
    shared secret; `sign()` and `completion_event()` build what the real
    provider would send. Hosted sessions start `unpaid` until `mark_paid()`.
    """

    def __init__(self, webhook_secret: str = "whsec_local", base_url: str = "https://pay.local") -> None:
        self._webhook_secret = webhook_secret
        self._base_url = base_url.rstrip("/")
        self.requests: List[HostedCheckoutRequest] = []
        self.sessions: Dict[str, ProviderCheckout] = {}
        self.fail_next: Optional[Exception] = None

    def _maybe_fail(self) -> None:
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc

    async def create_hosted_checkout(self, request: HostedCheckoutRequest) -> HostedCheckout:
        self._maybe_fail()
        if not request.price_reference.startswith("price_"):
            raise PaymentFailedError(f"no such price: {request.price_reference}")
        self.requests.append(request)
        session_id = f"cs_test_{uuid4().hex}"
        self.sessions[session_id] = ProviderCheckout(
            provider_session_id=session_id, payment_status="unpaid", metadata=dict(request.metadata)
        )
        return HostedCheckout(provider_session_id=session_id, url=f"{self._base_url}/c/{session_id}")

    async def retrieve_checkout(self, provider_session_id: str) -> ProviderCheckout:
        self._maybe_fail()
        hosted = self.sessions.get(provider_session_id)
        if hosted is None:
            raise PaymentFailedError(f"no such checkout session: {provider_session_id}")
        return hosted.model_copy()

    def mark_paid(self, provider_session_id: str, payment_status: str = PAID) -> None:
        self.sessions[provider_session_id].payment_status = payment_status

    def sign(self, payload: bytes) -> str:
        return hmac.new(self._webhook_secret.encode(), payload, hashlib.sha256).hexdigest()

    def completion_event(
        self,
        metadata: Dict[str, Any],
        provider_session_id: Optional[str] = None,
        payment_status: str = PAID,
        event_type: str = "checkout.session.completed",
    ) -> bytes:
        body = {
            "id": f"evt_{uuid4().hex}",
            "type": event_type,
            "data": {
                "object": {
                    "id": provider_session_id or f"cs_test_{uuid4().hex}",
                    "payment_status": payment_status,
                    "metadata": metadata,
                }
            },
        }
        return json.dumps(body).encode()

    def verify_event(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        if not signature or not hmac.compare_digest(self.sign(payload), signature):
            raise InvalidTokenError("invalid webhook signature")
        try:
            raw = json.loads(payload)
            return ProviderEvent(id=raw["id"], type=raw["type"], data=raw["data"]["object"])
        except (ValueError, KeyError, TypeError) as exc:
            raise InvalidTokenError("malformed webhook payload") from exc
