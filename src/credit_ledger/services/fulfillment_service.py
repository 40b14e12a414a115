from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError

from ..db.base import BaseDBManager
from ..errors import (
    DuplicatePurchaseError,
    InvalidInputError,
    SessionNotFoundError,
    TransientFailureError,
)
from ..logging.event_logger import SystemEventLogger
from ..models.api_models import PaymentCompletionEvent
from ..models.base import utcnow
from ..models.checkout import CheckoutSession, CheckoutStatus
from ..models.ledger import LedgerReason
from ..payments.base import PaymentProvider
from .alert_service import SupportAlertService
from .ledger_store import LedgerStore


logger = logging.getLogger(__name__)

_PATH = "payment-webhook"


class FulfillmentOutcome(str, Enum):
    CREDITED = "credited"
    DUPLICATE = "duplicate"
    NEEDS_RECONCILIATION = "needs_reconciliation"
    AWAITING_PAYMENT = "awaiting_payment"


class FulfillmentResult(BaseModel):
    outcome: FulfillmentOutcome
    session_id: str
    user_id: str
    credits: int
    balance: Optional[int] = None


class FulfillmentProcessor:
    """
    Credits the ledger exactly once per checkout session.

    The claim (pending -> completed) is a single conditional update; only
    the caller that wins it credits the ledger. A failed credit releases the
    claim so the provider's retry can process the event again, and the
    unique purchase entry per session is the last line against a double
    grant. Nothing is credited until the provider reports the payment as
    `paid`.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerStore,
        events: SystemEventLogger,
        alerts: Optional[SupportAlertService] = None,
        provider: Optional[PaymentProvider] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._events = events
        self._alerts = alerts
        self._provider = provider

    async def confirm_session(self, session_id: str, user_id: Optional[str] = None) -> FulfillmentResult:
        """
        Ask the provider for the payment state of a checkout session and
        fulfill it if paid, for when the webhook is late or never arrives.

        When `user_id` is given, a session owned by someone else is reported
        as not found.
        """
        session = await self._db.get_checkout_session(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise SessionNotFoundError(f"checkout session {session_id} not found")
        if self._provider is None:
            raise TransientFailureError("no payment provider configured for confirmation")
        if session.provider_session_id is None:
            # The hosted session was never created, so nothing can have been paid.
            return FulfillmentResult(
                outcome=FulfillmentOutcome.AWAITING_PAYMENT,
                session_id=session_id,
                user_id=session.user_id,
                credits=session.credits,
            )

        hosted = await self._provider.retrieve_checkout(session.provider_session_id)
        if hosted.metadata.get("session_id") != session_id:
            raise InvalidInputError(
                f"provider session {hosted.provider_session_id} does not belong to {session_id}"
            )
        logger.info(
            "Confirming session %s: provider reports payment_status=%s", session_id, hosted.payment_status
        )
        return await self.handle_completion_event(
            {
                "event_id": f"confirm:{hosted.provider_session_id}",
                "type": "checkout.session.completed",
                "provider_session_id": hosted.provider_session_id,
                "payment_status": hosted.payment_status,
                "metadata": hosted.metadata,
            }
        )

    async def handle_completion_event(
        self, event: Union[PaymentCompletionEvent, Mapping[str, Any]]
    ) -> FulfillmentResult:
        parsed = self._parse(event)
        meta = parsed.metadata
        correlation_id = parsed.event_id

        if not parsed.is_paid:
            return await self._awaiting_payment(parsed)

        session = await self._db.get_checkout_session(meta.session_id)
        if session is None:
            return await self._reconcile(
                parsed, "Completion event for unknown checkout session", status=None
            )
        await self._check_matches(session, parsed)

        claimed = False
        balance: Optional[int] = None
        try:
            async with self._db.transaction():
                claim = await self._db.claim_checkout_session(meta.session_id, completed_at=utcnow())
                claimed = claim is not None
                if claimed:
                    balance = await self._ledger.append_entry(
                        meta.user_id,
                        meta.credits,
                        LedgerReason.PURCHASE,
                        order_id=meta.session_id,
                        description=f"Checkout session {meta.session_id}",
                        correlation_id=correlation_id,
                    )
        except DuplicatePurchaseError:
            # A concurrent recovery already wrote the entry; the session must
            # read completed whether or not our claim survived.
            await self._db.claim_checkout_session(meta.session_id, completed_at=utcnow())
            return await self._duplicate(parsed)
        except Exception as exc:
            await self._ledger.forget_balance(meta.user_id)
            released = await self._db.release_checkout_session(meta.session_id) if claimed else False
            logger.error(
                "Crediting session %s failed; claim released=%s",
                meta.session_id,
                released,
                exc_info=True,
            )
            await self._events.critical(
                "Credit addition failed after payment",
                user_id=meta.user_id,
                path=_PATH,
                payload={"session_id": meta.session_id, "credits": meta.credits, "error": str(exc)},
                correlation_id=correlation_id,
            )
            raise

        if not claimed:
            return await self._handle_unclaimed(parsed)

        logger.info("Session %s fulfilled: +%d credits for %s", meta.session_id, meta.credits, meta.user_id)
        await self._events.info(
            "Credits added after payment",
            user_id=meta.user_id,
            path=_PATH,
            payload={"session_id": meta.session_id, "credits": meta.credits, "new_balance": balance},
            correlation_id=correlation_id,
        )
        return self._result(parsed, FulfillmentOutcome.CREDITED, balance)

    async def _handle_unclaimed(self, parsed: PaymentCompletionEvent) -> FulfillmentResult:
        meta = parsed.metadata
        current = await self._db.get_checkout_session(meta.session_id)
        if current is None or current.status is CheckoutStatus.ABANDONED:
            return await self._reconcile(
                parsed,
                "Completion event for abandoned checkout session",
                status=current.status if current else None,
            )

        if current.status is CheckoutStatus.PENDING:
            # A concurrent attempt released its claim after failing; let the
            # provider retry rather than racing it here.
            raise TransientFailureError(f"session {meta.session_id} is being processed", session_id=meta.session_id)

        if await self._db.get_purchase_entry(meta.session_id) is not None:
            return await self._duplicate(parsed)

        # Completed without a purchase entry: an earlier attempt stopped
        # between claim and credit on a backend without rollback.
        logger.warning("Session %s completed without ledger entry; crediting now", meta.session_id)
        try:
            balance = await self._ledger.append_entry(
                meta.user_id,
                meta.credits,
                LedgerReason.PURCHASE,
                order_id=meta.session_id,
                description=f"Checkout session {meta.session_id} (recovered)",
                correlation_id=parsed.event_id,
            )
        except DuplicatePurchaseError:
            return await self._duplicate(parsed)
        await self._events.warn(
            "Recovered missing purchase entry",
            user_id=meta.user_id,
            path=_PATH,
            payload={"session_id": meta.session_id, "credits": meta.credits, "new_balance": balance},
            correlation_id=parsed.event_id,
        )
        return self._result(parsed, FulfillmentOutcome.CREDITED, balance)

    async def _awaiting_payment(self, parsed: PaymentCompletionEvent) -> FulfillmentResult:
        meta = parsed.metadata
        logger.info(
            "Session %s not fulfilled yet: payment_status=%s", meta.session_id, parsed.payment_status
        )
        await self._events.info(
            "Payment not yet confirmed",
            user_id=meta.user_id,
            path=_PATH,
            payload={
                "session_id": meta.session_id,
                "event_type": parsed.type,
                "payment_status": parsed.payment_status,
            },
            correlation_id=parsed.event_id,
        )
        return self._result(parsed, FulfillmentOutcome.AWAITING_PAYMENT)

    async def _duplicate(self, parsed: PaymentCompletionEvent) -> FulfillmentResult:
        meta = parsed.metadata
        logger.info("Duplicate completion event %s for session %s ignored", parsed.event_id, meta.session_id)
        await self._events.info(
            "Duplicate session processing prevented",
            user_id=meta.user_id,
            path=_PATH,
            payload={"session_id": meta.session_id, "event_id": parsed.event_id},
            correlation_id=parsed.event_id,
        )
        return self._result(parsed, FulfillmentOutcome.DUPLICATE)

    async def _reconcile(
        self, parsed: PaymentCompletionEvent, reason: str, status: Optional[CheckoutStatus]
    ) -> FulfillmentResult:
        meta = parsed.metadata
        details = {
            "code": meta.session_id,
            "path": _PATH,
            "session_id": meta.session_id,
            "provider_session_id": parsed.provider_session_id,
            "user_id": meta.user_id,
            "credits": meta.credits,
            "status": status.value if status else None,
            "event_id": parsed.event_id,
        }
        logger.error("%s: %s (manual review required)", reason, meta.session_id)
        await self._events.critical(
            reason, user_id=meta.user_id, path=_PATH, payload=details, correlation_id=parsed.event_id
        )
        if self._alerts is not None:
            await self._alerts.send_alert("Payment needs reconciliation", details)
        return self._result(parsed, FulfillmentOutcome.NEEDS_RECONCILIATION)

    async def _check_matches(self, session: CheckoutSession, parsed: PaymentCompletionEvent) -> None:
        meta = parsed.metadata
        if session.user_id == meta.user_id and session.credits == meta.credits:
            return
        await self._events.critical(
            "Completion event metadata does not match checkout session",
            user_id=session.user_id,
            path=_PATH,
            payload={
                "session_id": session.id,
                "event_user_id": meta.user_id,
                "event_credits": meta.credits,
                "session_credits": session.credits,
            },
            correlation_id=parsed.event_id,
        )
        raise InvalidInputError(f"completion event does not match session {session.id}")

    @staticmethod
    def _parse(event: Union[PaymentCompletionEvent, Mapping[str, Any]]) -> PaymentCompletionEvent:
        if isinstance(event, PaymentCompletionEvent):
            return event
        try:
            return PaymentCompletionEvent.model_validate(event)
        except ValidationError as exc:
            raise InvalidInputError(f"malformed completion event: {exc.error_count()} error(s)") from exc

    @staticmethod
    def _result(
        parsed: PaymentCompletionEvent, outcome: FulfillmentOutcome, balance: Optional[int] = None
    ) -> FulfillmentResult:
        meta = parsed.metadata
        return FulfillmentResult(
            outcome=outcome,
            session_id=meta.session_id,
            user_id=meta.user_id,
            credits=meta.credits,
            balance=balance,
        )
