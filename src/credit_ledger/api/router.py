from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from ..errors import InvalidTokenError
from ..models.api_models import (
    COMPLETION_EVENT_TYPES,
    AdjustCreditsRequest,
    CheckoutSessionResponse,
    ConfirmCheckoutRequest,
    ConfirmCheckoutResponse,
    ConsumeCreditsRequest,
    CreateCheckoutRequest,
    CreditBalanceResponse,
    CreditSummaryResponse,
    LedgerEntryDetail,
    ReaperResponse,
    WebhookAck,
)
from ..models.ledger import AccountVerification
from .dependencies import AuthContext, CreditServices, get_auth_context, get_services, require_admin


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])


@router.post("/checkout", response_model=CheckoutSessionResponse)
async def create_checkout(
    payload: CreateCheckoutRequest,
    auth: AuthContext = Depends(get_auth_context),
    services: CreditServices = Depends(get_services),
) -> CheckoutSessionResponse:
    created = await services.checkout.create_session(
        user_id=auth.user_id,
        price_reference=payload.price_reference,
        credits=payload.credits,
        customer_email=auth.email,
    )
    return CheckoutSessionResponse(session_id=created.session_id, payment_url=created.payment_url)


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    services: CreditServices = Depends(get_services),
) -> WebhookAck:
    body = await request.body()
    try:
        event = services.provider.verify_event(body, stripe_signature)
    except InvalidTokenError as exc:
        await services.events.warn(
            "Webhook signature verification failed",
            path="payment-webhook",
            payload={"error": str(exc), "signature_present": bool(stripe_signature)},
        )
        raise

    metadata = event.data.get("metadata") or {}
    if event.type not in COMPLETION_EVENT_TYPES or metadata.get("type") != "credits":
        logger.info("Ignoring provider event %s of type %s", event.id, event.type)
        return WebhookAck(outcome="ignored")

    await services.events.info(
        "Payment webhook received",
        path="payment-webhook",
        payload={"event_id": event.id, "provider_session_id": event.data.get("id")},
        correlation_id=event.id,
    )
    # Failures propagate as 4xx/5xx so the provider retries; processing
    # is idempotent per session.
    result = await services.fulfillment.handle_completion_event(event.to_completion_payload())
    return WebhookAck(outcome=result.outcome.value)


@router.post("/confirm", response_model=ConfirmCheckoutResponse)
async def confirm_checkout(
    payload: ConfirmCheckoutRequest,
    auth: AuthContext = Depends(get_auth_context),
    services: CreditServices = Depends(get_services),
) -> ConfirmCheckoutResponse:
    """Called from the success page with the session id the provider redirected back with."""
    result = await services.fulfillment.confirm_session(payload.session_id, user_id=auth.user_id)
    balance = result.balance
    if balance is None:
        balance = await services.ledger.get_balance(auth.user_id)
    return ConfirmCheckoutResponse(
        session_id=result.session_id,
        outcome=result.outcome.value,
        credits=result.credits,
        balance=balance,
    )


@router.get("/balance", response_model=CreditBalanceResponse)
async def get_balance(
    auth: AuthContext = Depends(get_auth_context),
    services: CreditServices = Depends(get_services),
) -> CreditBalanceResponse:
    balance = await services.ledger.get_balance(auth.user_id)
    return CreditBalanceResponse(user_id=auth.user_id, balance=balance)


@router.get("/summary", response_model=CreditSummaryResponse)
async def get_summary(
    auth: AuthContext = Depends(get_auth_context),
    services: CreditServices = Depends(get_services),
) -> CreditSummaryResponse:
    summary = await services.ledger.summarize(auth.user_id)
    return CreditSummaryResponse(
        total=summary.total,
        recent_purchases=summary.recent_purchases,
        recent_usage=summary.recent_usage,
        details=[
            LedgerEntryDetail(
                delta=e.delta,
                balance_after=e.balance_after,
                reason=e.reason,
                order_id=e.order_id,
                created_at=e.created_at,
            )
            for e in summary.recent_entries
        ],
    )


@router.post("/usage", response_model=CreditBalanceResponse)
async def consume_credits(
    payload: ConsumeCreditsRequest,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    services: CreditServices = Depends(get_services),
) -> CreditBalanceResponse:
    balance = await services.ledger.consume_credits(
        auth.user_id,
        payload.amount,
        order_id=payload.order_id,
        description=payload.description,
        correlation_id=request.headers.get("X-Request-Id"),
    )
    return CreditBalanceResponse(user_id=auth.user_id, balance=balance)


@router.post("/adjust", response_model=CreditBalanceResponse, dependencies=[Depends(require_admin)])
async def adjust_credits(
    payload: AdjustCreditsRequest,
    services: CreditServices = Depends(get_services),
) -> CreditBalanceResponse:
    balance = await services.ledger.adjust_credits(
        payload.user_id, payload.delta, description=payload.description
    )
    return CreditBalanceResponse(user_id=payload.user_id, balance=balance)


@router.get(
    "/verify/{user_id}", response_model=AccountVerification, dependencies=[Depends(require_admin)]
)
async def verify_account(
    user_id: str, services: CreditServices = Depends(get_services)
) -> AccountVerification:
    return await services.ledger.verify_account(user_id)


@router.post("/reaper/purge", response_model=ReaperResponse, dependencies=[Depends(require_admin)])
async def purge_abandoned_sessions(services: CreditServices = Depends(get_services)) -> ReaperResponse:
    result = await services.reaper.purge_abandoned()
    return ReaperResponse(deleted_count=result.deleted_count, cutoff=result.cutoff)


@router.post(
    "/reaper/purge-events", response_model=ReaperResponse, dependencies=[Depends(require_admin)]
)
async def purge_error_events(services: CreditServices = Depends(get_services)) -> ReaperResponse:
    result = await services.reaper.purge_error_events()
    return ReaperResponse(deleted_count=result.deleted_count, cutoff=result.cutoff)
