from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, List, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class LedgerReason(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    ADJUSTMENT = "adjustment"


class CreditAccount(DBSerializableModel):
    """
    Per-user cached balance. Always equal to the sum of that user's ledger
    deltas; created on the first ledger write and never deleted.
    """

    collection_name: ClassVar[str] = "credit_accounts"
    primary_key: ClassVar[Optional[str]] = "user_id"

    user_id: str
    balance: int = 0
    entry_count: int = Field(
        default=0,
        description="Number of ledger entries written; the next entry gets entry_count + 1.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LedgerEntry(DBSerializableModel):
    """
    Immutable record of a single balance-affecting event.
    """

    collection_name: ClassVar[str] = "credit_ledger"

    id: Optional[str] = Field(default=None)
    user_id: str
    delta: int = Field(description="Signed change; positive grants, negative consumes.")
    balance_after: int = Field(description="Account balance right after this entry.")
    reason: LedgerReason
    order_id: Optional[str] = Field(
        default=None,
        description="Checkout session or service order this entry belongs to.",
    )
    sequence: int = Field(default=0, description="Per-user write order, starting at 1.")
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class AccountVerification(BaseModel):
    user_id: str
    cached_balance: int
    ledger_total: int
    entry_count: int
    running_sum_ok: bool

    @property
    def consistent(self) -> bool:
        return self.running_sum_ok and self.cached_balance == self.ledger_total


class CreditSummary(BaseModel):
    user_id: str
    total: int
    recent_purchases: int
    recent_usage: int
    window_start: datetime
    recent_entries: List[LedgerEntry] = Field(default_factory=list)
