from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class CheckoutStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class CheckoutSession(DBSerializableModel):
    """
    A tracked attempt to purchase credits through the hosted payment flow.

    `pending` is the only initial state; `completed` and `abandoned` are
    terminal and mutually exclusive.
    """

    collection_name: ClassVar[str] = "checkout_sessions"

    id: Optional[str] = Field(default=None)
    user_id: str
    price_reference: str
    credits: int = Field(gt=0, description="Credits granted when the session completes.")
    status: CheckoutStatus = CheckoutStatus.PENDING
    customer_email: Optional[str] = None
    provider_session_id: Optional[str] = Field(
        default=None,
        description="Identifier of the hosted session at the payment provider.",
    )
    payment_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
