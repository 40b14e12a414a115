from __future__ import annotations

import logging
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel

from ..db.base import BaseDBManager
from ..errors import (
    AuthenticationRequiredError,
    InvalidInputError,
    PaymentFailedError,
    SessionNotFoundError,
)
from ..logging.event_logger import SystemEventLogger
from ..models.checkout import CheckoutSession
from ..payments.base import HostedCheckoutRequest, PaymentProvider


logger = logging.getLogger(__name__)

# Replaced in the success URL so the return page can confirm the session.
SESSION_ID_PLACEHOLDER = "{SESSION_ID}"


class CheckoutSessionCreated(BaseModel):
    session_id: str
    payment_url: str


class CheckoutSessionManager:
    """
    Creates pending checkout sessions and the matching hosted payment
    session. Never touches the ledger; crediting happens on fulfillment.
    """

    def __init__(
        self,
        db: BaseDBManager,
        provider: PaymentProvider,
        events: SystemEventLogger,
        success_url: str,
        cancel_url: str,
    ) -> None:
        self._db = db
        self._provider = provider
        self._events = events
        self._success_url = success_url
        self._cancel_url = cancel_url

    async def create_session(
        self,
        user_id: Optional[str],
        price_reference: Optional[str],
        credits: Optional[int],
        customer_email: Optional[str] = None,
    ) -> CheckoutSessionCreated:
        if not user_id:
            raise AuthenticationRequiredError("checkout requires an authenticated user")
        if not price_reference or not isinstance(credits, int) or isinstance(credits, bool) or credits <= 0:
            raise InvalidInputError(
                "price_reference and a positive credits count are required",
                price_reference=price_reference,
                credits=credits,
            )

        session_id = uuid4().hex
        session = CheckoutSession(
            id=session_id,
            user_id=user_id,
            price_reference=price_reference,
            credits=credits,
            customer_email=customer_email,
        )
        await self._db.add_checkout_session(session)

        request = HostedCheckoutRequest(
            price_reference=price_reference,
            success_url=self._success_url.replace(SESSION_ID_PLACEHOLDER, session_id),
            cancel_url=self._cancel_url,
            customer_email=customer_email,
            client_reference_id=session_id,
            metadata={
                "type": "credits",
                "session_id": session_id,
                "user_id": user_id,
                "credits": str(credits),
            },
        )
        try:
            hosted = await self._provider.create_hosted_checkout(request)
        except PaymentFailedError as exc:
            # The pending record stays behind and is purged by the reaper.
            await self._events.error(
                "Checkout session creation failed at provider",
                user_id=user_id,
                path="checkout",
                payload={"session_id": session_id, "error": str(exc)},
            )
            raise

        await self._db.attach_provider_session(session_id, hosted.provider_session_id, hosted.url)
        logger.info(
            "Checkout session %s created for user %s (%d credits)",
            session_id,
            user_id,
            credits,
            extra={"provider_session_id": hosted.provider_session_id},
        )
        await self._events.info(
            "Checkout session created",
            user_id=user_id,
            path="checkout",
            payload={
                "session_id": session_id,
                "provider_session_id": hosted.provider_session_id,
                "credits": credits,
            },
        )
        return CheckoutSessionCreated(session_id=session_id, payment_url=hosted.url)

    async def get_session(self, session_id: str) -> CheckoutSession:
        session = await self._db.get_checkout_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"checkout session {session_id} not found")
        return session
