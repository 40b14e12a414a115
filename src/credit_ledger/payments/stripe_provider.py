from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional

import stripe

from .base import HostedCheckout, HostedCheckoutRequest, PaymentProvider, ProviderCheckout, ProviderEvent
from ..errors import InvalidTokenError, PaymentFailedError, ProviderTimeoutError


logger = logging.getLogger(__name__)


class StripePaymentProvider(PaymentProvider):
    """
    Stripe Checkout in one-time `payment` mode.

    The SDK is synchronous, so calls run in a worker thread under
    `asyncio.wait_for`; a call that outlives `timeout_seconds` is reported
    as ProviderTimeoutError instead of being retried.
    """

    def __init__(self, api_key: str, webhook_secret: str, timeout_seconds: float = 10.0) -> None:
        if not api_key:
            raise ValueError("Stripe API key is not configured")
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._timeout_seconds = timeout_seconds

    async def _call(self, action: str, func: Callable[..., Any], *args: Any, **params: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, api_key=self._api_key, **params),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Stripe %s timed out after %.1fs", action, self._timeout_seconds)
            raise ProviderTimeoutError(f"stripe {action} timed out") from exc
        except stripe.StripeError as exc:
            logger.error(
                "Stripe %s failed: %s",
                action,
                exc,
                extra={"stripe_code": getattr(exc, "code", None)},
            )
            raise PaymentFailedError(f"stripe error: {exc}") from exc

    async def create_hosted_checkout(self, request: HostedCheckoutRequest) -> HostedCheckout:
        params = {
            "mode": "payment",
            "line_items": [{"price": request.price_reference, "quantity": request.quantity}],
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
            "metadata": request.metadata,
        }
        if request.customer_email:
            params["customer_email"] = request.customer_email
        if request.client_reference_id:
            params["client_reference_id"] = request.client_reference_id

        session = await self._call("checkout creation", stripe.checkout.Session.create, **params)
        logger.info("Created Stripe checkout session %s", session["id"])
        return HostedCheckout(provider_session_id=session["id"], url=session["url"])

    async def retrieve_checkout(self, provider_session_id: str) -> ProviderCheckout:
        session = await self._call("checkout retrieval", stripe.checkout.Session.retrieve, provider_session_id)
        metadata = session.get("metadata") or {}
        return ProviderCheckout(
            provider_session_id=session["id"],
            payment_status=session.get("payment_status"),
            metadata={key: metadata[key] for key in metadata},
        )

    def verify_event(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        if not signature:
            raise InvalidTokenError("missing Stripe-Signature header")
        if not self._webhook_secret:
            # Refuse to trust anything rather than skip verification.
            raise InvalidTokenError("webhook secret is not configured")

        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(text, signature, self._webhook_secret)
        except UnicodeDecodeError as exc:
            logger.warning("Stripe webhook body is not valid UTF-8")
            raise InvalidTokenError("undecodable webhook payload") from exc
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise InvalidTokenError("invalid webhook signature") from exc

        try:
            raw = json.loads(text)
            return ProviderEvent(id=raw["id"], type=raw["type"], data=raw["data"]["object"])
        except (ValueError, KeyError, TypeError) as exc:
            raise InvalidTokenError("malformed webhook payload") from exc
