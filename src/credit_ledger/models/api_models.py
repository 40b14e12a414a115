from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .ledger import LedgerReason


class CreateCheckoutRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    price_reference: str = Field(
        min_length=1,
        validation_alias=AliasChoices("price_reference", "priceReference", "priceId"),
    )
    credits: int = Field(gt=0)


class CheckoutSessionResponse(BaseModel):
    session_id: str
    payment_url: str


class ConsumeCreditsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: int = Field(gt=0)
    order_id: Optional[str] = None
    description: Optional[str] = None


class AdjustCreditsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    delta: int
    description: Optional[str] = None


class CreditBalanceResponse(BaseModel):
    user_id: str
    balance: int


class LedgerEntryDetail(BaseModel):
    delta: int
    balance_after: int
    reason: LedgerReason
    order_id: Optional[str] = None
    created_at: datetime


class CreditSummaryResponse(BaseModel):
    total: int
    recent_purchases: int
    recent_usage: int
    details: list[LedgerEntryDetail] = Field(default_factory=list)


class ReaperResponse(BaseModel):
    ok: bool = True
    deleted_count: int
    cutoff: datetime


class WebhookAck(BaseModel):
    received: bool = True
    outcome: Optional[str] = None


class SanitizedError(BaseModel):
    error: str
    code: str


class CompletionMetadata(BaseModel):
    """
    Metadata embedded in the hosted session at creation time and echoed back
    by the provider's completion event.
    """

    model_config = ConfigDict(extra="forbid")

    type: Literal["credits"]
    session_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    credits: int = Field(gt=0)


class ConfirmCheckoutRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    session_id: str = Field(min_length=1, validation_alias=AliasChoices("session_id", "sessionId"))


class ConfirmCheckoutResponse(BaseModel):
    session_id: str
    outcome: str
    credits: int
    balance: int


PAYMENT_STATUS_PAID = "paid"

COMPLETION_EVENT_TYPES = frozenset(
    {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
)


class PaymentCompletionEvent(BaseModel):
    """
    A completed hosted session. `payment_status` is the provider's view of
    the money; only `paid` may be credited.
    """

    model_config = ConfigDict(extra="ignore")

    event_id: str = Field(min_length=1)
    type: Literal["checkout.session.completed", "checkout.session.async_payment_succeeded"]
    provider_session_id: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: CompletionMetadata

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PAYMENT_STATUS_PAID
