from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional

from .base import BaseDBManager
from ..errors import DuplicatePurchaseError, InsufficientCreditsError
from ..models.base import utcnow
from ..models.checkout import CheckoutSession, CheckoutStatus
from ..models.ledger import CreditAccount, LedgerEntry, LedgerReason
from ..models.system_event import SystemEvent


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Ledger appends hold a per-user asyncio lock across the read-modify-write;
    session state changes have no await between check and update, so they
    are atomic within the event loop.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, CreditAccount] = {}
        self._ledger: List[LedgerEntry] = []
        self._purchases: Dict[str, LedgerEntry] = {}
        self._sessions: Dict[str, CheckoutSession] = {}
        self._events: List[SystemEvent] = []
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # In-memory backend cannot provide real rollback; callers compensate.
        yield

    # Accounts / ledger
    async def get_account(self, user_id: str) -> Optional[CreditAccount]:
        account = self._accounts.get(user_id)
        return account.model_copy() if account is not None else None

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
        async with self._lock_for(user_id):
            account = self._accounts.get(user_id) or CreditAccount(user_id=user_id)
            new_balance = account.balance + delta

            if not allow_negative and new_balance < 0:
                raise InsufficientCreditsError(
                    f"balance {account.balance} cannot cover {delta}",
                    user_id=user_id,
                    current=account.balance,
                    requested=-delta,
                )
            if reason is LedgerReason.PURCHASE and order_id is not None and order_id in self._purchases:
                raise DuplicatePurchaseError(
                    f"purchase for order {order_id} already recorded", order_id=order_id
                )

            entry = LedgerEntry(
                id=self._next_id(),
                user_id=user_id,
                delta=delta,
                balance_after=new_balance,
                reason=reason,
                order_id=order_id,
                sequence=account.entry_count + 1,
                description=description,
                created_at=created_at or utcnow(),
            )
            self._ledger.append(entry)
            if reason is LedgerReason.PURCHASE and order_id is not None:
                self._purchases[order_id] = entry

            self._accounts[user_id] = account.model_copy(
                update={
                    "balance": new_balance,
                    "entry_count": entry.sequence,
                    "updated_at": utcnow(),
                }
            )
            return entry

    async def get_ledger_entries(
        self,
        user_id: str,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> Iterable[LedgerEntry]:
        entries = [
            e
            for e in self._ledger
            if e.user_id == user_id and (since is None or e.created_at >= since)
        ]
        entries.sort(key=lambda e: (e.created_at, e.sequence), reverse=True)
        if limit is not None:
            entries = entries[:limit]
        return entries

    async def get_purchase_entry(self, order_id: str) -> Optional[LedgerEntry]:
        return self._purchases.get(order_id)

    # Checkout sessions
    async def add_checkout_session(self, session: CheckoutSession) -> CheckoutSession:
        if session.id is None:
            session.id = self._next_id()
        self._sessions[session.id] = session.model_copy()
        return session

    async def get_checkout_session(self, session_id: str) -> Optional[CheckoutSession]:
        session = self._sessions.get(session_id)
        return session.model_copy() if session is not None else None

    async def attach_provider_session(
        self, session_id: str, provider_session_id: str, payment_url: str
    ) -> Optional[CheckoutSession]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        session.provider_session_id = provider_session_id
        session.payment_url = payment_url
        return session.model_copy()

    async def claim_checkout_session(
        self, session_id: str, completed_at: datetime
    ) -> Optional[CheckoutSession]:
        session = self._sessions.get(session_id)
        if session is None or session.status is not CheckoutStatus.PENDING:
            return None
        session.status = CheckoutStatus.COMPLETED
        session.completed_at = completed_at
        return session.model_copy()

    async def release_checkout_session(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None or session.status is not CheckoutStatus.COMPLETED:
            return False
        if session_id in self._purchases:
            return False
        session.status = CheckoutStatus.PENDING
        session.completed_at = None
        return True

    async def purge_pending_sessions(self, cutoff: datetime, mark_only: bool = False) -> int:
        stale = [
            s
            for s in self._sessions.values()
            if s.status is CheckoutStatus.PENDING and s.created_at < cutoff
        ]
        now = utcnow()
        for session in stale:
            if mark_only:
                session.status = CheckoutStatus.ABANDONED
                session.abandoned_at = now
            else:
                del self._sessions[session.id]  # type: ignore[arg-type]
        return len(stale)

    # System events
    async def add_system_event(self, event: SystemEvent) -> SystemEvent:
        if event.id is None:
            event.id = self._next_id()
        self._events.append(event)
        return event

    async def get_system_events(self, since: Optional[datetime] = None) -> Iterable[SystemEvent]:
        return [e for e in self._events if since is None or e.created_at >= since]

    async def purge_system_events(self, cutoff: datetime) -> int:
        kept = [e for e in self._events if e.created_at >= cutoff]
        deleted = len(self._events) - len(kept)
        self._events = kept
        return deleted
