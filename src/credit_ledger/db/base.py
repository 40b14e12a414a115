from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

from ..models.checkout import CheckoutSession
from ..models.ledger import CreditAccount, LedgerEntry, LedgerReason
from ..models.system_event import SystemEvent


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (in-memory, MongoDB, ...) implement these
    methods. Operations that carry an invariant (ledger append, session
    claim, stale-session purge) are single atomic methods here so each
    backend can use its own primitive for them; `transaction()` groups
    the remaining multi-step work where the backend supports it.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context if the backend supports it.
        Should rollback on exception and commit on success.
        """
        yield

    # Accounts / ledger
    @abstractmethod
    async def get_account(self, user_id: str) -> Optional[CreditAccount]: ...

    @abstractmethod
    async def append_ledger_entry(
        self,
        user_id: str,
        delta: int,
        reason: LedgerReason,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
        allow_negative: bool = True,
        created_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        """
        Atomically read the balance, write the entry with `balance_after`
        and update the account. Serialized per `user_id`.

        Raises InsufficientCreditsError when `allow_negative` is False and
        the new balance would drop below zero, and DuplicatePurchaseError
        for a second purchase entry with the same `order_id`.
        """
        ...

    @abstractmethod
    async def get_ledger_entries(
        self,
        user_id: str,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> Iterable[LedgerEntry]:
        """Entries ordered most recent first."""
        ...

    @abstractmethod
    async def get_purchase_entry(self, order_id: str) -> Optional[LedgerEntry]: ...

    # Checkout sessions
    @abstractmethod
    async def add_checkout_session(self, session: CheckoutSession) -> CheckoutSession: ...

    @abstractmethod
    async def get_checkout_session(self, session_id: str) -> Optional[CheckoutSession]: ...

    @abstractmethod
    async def attach_provider_session(
        self, session_id: str, provider_session_id: str, payment_url: str
    ) -> Optional[CheckoutSession]: ...

    @abstractmethod
    async def claim_checkout_session(
        self, session_id: str, completed_at: datetime
    ) -> Optional[CheckoutSession]:
        """
        Conditional update pending -> completed. Returns the updated session
        if this call made the transition, None otherwise.
        """
        ...

    @abstractmethod
    async def release_checkout_session(self, session_id: str) -> bool:
        """
        Undo a claim (completed -> pending) after a failed credit. A session
        that already has its purchase entry stays completed.
        """
        ...

    @abstractmethod
    async def purge_pending_sessions(self, cutoff: datetime, mark_only: bool = False) -> int:
        """
        Delete (or mark abandoned) every pending session created before
        `cutoff` in one filtered operation. Returns the affected count.
        """
        ...

    # System events
    @abstractmethod
    async def add_system_event(self, event: SystemEvent) -> SystemEvent: ...

    @abstractmethod
    async def get_system_events(self, since: Optional[datetime] = None) -> Iterable[SystemEvent]: ...

    @abstractmethod
    async def purge_system_events(self, cutoff: datetime) -> int: ...
