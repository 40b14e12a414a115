from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..errors import InvalidInputError
from ..logging.event_logger import SystemEventLogger
from ..models.base import utcnow
from ..models.ledger import AccountVerification, CreditSummary, LedgerEntry, LedgerReason


logger = logging.getLogger(__name__)


class LedgerStore:
    """
    Append-only credit accounting.

    The read-modify-write of every append is delegated to
    `BaseDBManager.append_ledger_entry`, which serializes it per user.
    This class validates input, keeps the balance cache current and
    records what happened.

    The balance cache must be shared by every process that writes the
    ledger; without one, pass `cache=None` and every read goes to the store.
    """

    BALANCE_CACHE_TTL_SECONDS = 60

    def __init__(
        self,
        db: BaseDBManager,
        events: SystemEventLogger,
        cache: Optional[AsyncCacheBackend] = None,
        summary_window: timedelta = timedelta(days=30),
        summary_max_entries: int = 50,
    ) -> None:
        self._db = db
        self._events = events
        self._cache = cache
        self._summary_window = summary_window
        self._summary_max_entries = summary_max_entries

    async def get_balance(self, user_id: str) -> int:
        if self._cache:
            cached = await self._cache.get(self._balance_cache_key(user_id))
            if isinstance(cached, dict):
                return cached["balance"]
        account = await self._db.get_account(user_id)
        if account is None:
            return 0
        await self._remember_balance(user_id, account.entry_count, account.balance)
        return account.balance

    async def _remember_balance(self, user_id: str, sequence: int, balance: int) -> None:
        # Cached with its ledger sequence; an older write never replaces a newer one.
        if not self._cache:
            return
        key = self._balance_cache_key(user_id)
        cached = await self._cache.get(key)
        if isinstance(cached, dict) and cached.get("sequence", 0) >= sequence:
            return
        await self._cache.set(
            key, {"sequence": sequence, "balance": balance}, ttl_seconds=self.BALANCE_CACHE_TTL_SECONDS
        )

    async def forget_balance(self, user_id: str) -> None:
        """Drop the cached balance; the next read goes to the store."""
        if self._cache:
            await self._cache.delete(self._balance_cache_key(user_id))

    async def append_entry(
        self,
        user_id: str,
        delta: int,
        reason: LedgerReason | str,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
        allow_negative: bool = True,
        occurred_at: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
    ) -> int:
        """
        Append one entry and return the new balance.

        Raises InsufficientCreditsError (when `allow_negative` is False),
        DuplicatePurchaseError, or whatever the store raises; a failed
        append is never reported as success.
        """
        if not user_id:
            raise InvalidInputError("user_id is required")
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise InvalidInputError(f"delta must be a non-zero integer, got {delta!r}")
        try:
            reason = LedgerReason(reason)
        except ValueError as exc:
            raise InvalidInputError(f"unknown ledger reason {reason!r}") from exc

        try:
            entry = await self._db.append_ledger_entry(
                user_id=user_id,
                delta=delta,
                reason=reason,
                order_id=order_id,
                description=description,
                allow_negative=allow_negative,
                created_at=occurred_at,
            )
        except Exception as exc:
            await self.forget_balance(user_id)
            await self._events.warn(
                "Credit update failed",
                user_id=user_id,
                payload={"delta": delta, "reason": reason.value, "order_id": order_id, "error": str(exc)},
                correlation_id=correlation_id,
            )
            raise

        await self._remember_balance(user_id, entry.sequence, entry.balance_after)

        await self._events.info(
            "Credits updated",
            user_id=user_id,
            payload={
                "delta": delta,
                "reason": reason.value,
                "order_id": order_id,
                "balance_after": entry.balance_after,
            },
            correlation_id=correlation_id,
        )
        return entry.balance_after

    async def consume_credits(
        self,
        user_id: str,
        amount: int,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> int:
        if amount <= 0:
            raise InvalidInputError("amount must be positive")
        return await self.append_entry(
            user_id,
            -amount,
            LedgerReason.USAGE,
            order_id=order_id,
            description=description,
            allow_negative=False,
            correlation_id=correlation_id,
        )

    async def adjust_credits(
        self,
        user_id: str,
        delta: int,
        description: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> int:
        return await self.append_entry(
            user_id,
            delta,
            LedgerReason.ADJUSTMENT,
            description=description,
            allow_negative=False,
            correlation_id=correlation_id,
        )

    async def list_recent(
        self, user_id: str, limit: int = 50, since: Optional[datetime] = None
    ) -> List[LedgerEntry]:
        if limit <= 0:
            raise InvalidInputError("limit must be positive")
        return list(await self._db.get_ledger_entries(user_id, limit=limit, since=since))

    async def summarize(
        self,
        user_id: str,
        window: Optional[timedelta] = None,
        as_of: Optional[datetime] = None,
        max_entries: Optional[int] = None,
    ) -> CreditSummary:
        window = window if window is not None else self._summary_window
        max_entries = max_entries if max_entries is not None else self._summary_max_entries
        if max_entries < 0:
            raise InvalidInputError("max_entries must not be negative")
        as_of = as_of or utcnow()
        window_start = as_of - window

        in_window = [
            e
            for e in await self._db.get_ledger_entries(user_id, since=window_start)
            if e.created_at <= as_of
        ]
        purchases = sum(e.delta for e in in_window if e.delta > 0)
        usage = sum(-e.delta for e in in_window if e.delta < 0)

        # The headline figure is the whole balance, not a windowed one.
        account = await self._db.get_account(user_id)
        total = account.balance if account is not None else 0

        return CreditSummary(
            user_id=user_id,
            total=total,
            recent_purchases=purchases,
            recent_usage=usage,
            window_start=window_start,
            recent_entries=in_window[:max_entries],
        )

    async def verify_account(self, user_id: str) -> AccountVerification:
        """Recompute the balance from the ledger and check every running total."""
        entries = sorted(await self._db.get_ledger_entries(user_id), key=lambda e: e.sequence)
        running = 0
        running_ok = True
        for entry in entries:
            running += entry.delta
            if entry.balance_after != running:
                running_ok = False

        account = await self._db.get_account(user_id)
        result = AccountVerification(
            user_id=user_id,
            cached_balance=account.balance if account is not None else 0,
            ledger_total=running,
            entry_count=len(entries),
            running_sum_ok=running_ok,
        )
        if not result.consistent:
            logger.error(
                "Ledger mismatch for user %s: cached=%d ledger=%d running_ok=%s",
                user_id,
                result.cached_balance,
                result.ledger_total,
                running_ok,
            )
            await self._events.critical(
                "Ledger inconsistency detected",
                user_id=user_id,
                payload=result.model_dump(),
            )
        return result

    @staticmethod
    def _balance_cache_key(user_id: str) -> str:
        return f"credit:user:{user_id}:balance"
