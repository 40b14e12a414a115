from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING, IndexModel, ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    OperationFailure,
    ServerSelectionTimeoutError,
    WTimeoutError,
)

from .base import BaseDBManager
from ..errors import DuplicatePurchaseError, InsufficientCreditsError, StoreUnavailableError
from ..models.base import DBSerializableModel, utcnow
from ..models.checkout import CheckoutSession, CheckoutStatus
from ..models.ledger import CreditAccount, LedgerEntry, LedgerReason
from ..models.system_event import SystemEvent


logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)

_TRANSIENT_ERRORS = (ConnectionFailure, ExecutionTimeout, ServerSelectionTimeoutError, WTimeoutError)
_MAX_TRANSACTION_ATTEMPTS = 3

_current_session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
    "credit_ledger_mongo_session", default=None
)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    Ledger appends and `transaction()` use multi-document transactions, so
    the deployment must be a replica set (a single-node replica set is
    enough for development). Every call is bounded by the client's
    `timeoutMS`; driver time-outs surface as StoreUnavailableError.
    """

    def __init__(self, client: AsyncIOMotorClient, database: AsyncIOMotorDatabase) -> None:
        self._client = client
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str, timeout_seconds: float = 5.0) -> "MongoDBManager":
        timeout_ms = int(timeout_seconds * 1000)
        client = AsyncIOMotorClient(
            uri,
            tz_aware=True,
            timeoutMS=timeout_ms,
            serverSelectionTimeoutMS=timeout_ms,
        )
        return cls(client, client[db_name])

    async def ensure_indexes(self) -> None:
        await self._db[LedgerEntry.collection_name].create_indexes(
            [
                IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING), ("sequence", DESCENDING)]),
                IndexModel(
                    [("order_id", ASCENDING)],
                    unique=True,
                    name="unique_purchase_order",
                    partialFilterExpression={
                        "reason": LedgerReason.PURCHASE.value,
                        "order_id": {"$type": "string"},
                    },
                ),
            ]
        )
        await self._db[CheckoutSession.collection_name].create_indexes(
            [IndexModel([("status", ASCENDING), ("created_at", ASCENDING)])]
        )
        await self._db[SystemEvent.collection_name].create_indexes(
            [IndexModel([("created_at", ASCENDING)])]
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _current_session.get() is not None:
            # Already inside a transaction; join it.
            yield
            return
        async with await self._client.start_session() as session:
            async with session.start_transaction():
                token = _current_session.set(session)
                try:
                    yield
                finally:
                    _current_session.reset(token)

    # Helper utilities
    @staticmethod
    def _session() -> Optional[AsyncIOMotorClientSession]:
        return _current_session.get()

    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data and "id" in model_cls.model_fields:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except _TRANSIENT_ERRORS as exc:
            logger.error("MongoDB %s failed: %s", operation, exc)
            raise StoreUnavailableError(f"store unavailable during {operation}") from exc

    # Accounts / ledger
    async def get_account(self, user_id: str) -> Optional[CreditAccount]:
        col = self._db[CreditAccount.collection_name]
        async with self._guard("get_account"):
            doc = await col.find_one({"_id": user_id}, session=self._session())
        return self._decode(CreditAccount, doc)

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
        async with self._guard("append_ledger_entry"):
            outer = self._session()
            if outer is not None:
                return await self._append_in_session(
                    outer, user_id, delta, reason, order_id, description, allow_negative, created_at
                )

            for attempt in range(1, _MAX_TRANSACTION_ATTEMPTS + 1):
                try:
                    async with await self._client.start_session() as session:
                        async with session.start_transaction():
                            return await self._append_in_session(
                                session, user_id, delta, reason, order_id, description, allow_negative, created_at
                            )
                except OperationFailure as exc:
                    # Concurrent writers on the same account abort with a
                    # write conflict; the whole read-modify-write is retried.
                    if exc.has_error_label("TransientTransactionError") and attempt < _MAX_TRANSACTION_ATTEMPTS:
                        logger.warning(
                            "Ledger append conflict for user %s, retrying (%d/%d)",
                            user_id,
                            attempt,
                            _MAX_TRANSACTION_ATTEMPTS,
                        )
                        continue
                    raise
            raise StoreUnavailableError("ledger append did not commit")  # pragma: no cover

    async def _append_in_session(
        self,
        session: AsyncIOMotorClientSession,
        user_id: str,
        delta: int,
        reason: LedgerReason,
        order_id: Optional[str],
        description: Optional[str],
        allow_negative: bool,
        created_at: Optional[datetime],
    ) -> LedgerEntry:
        accounts = self._db[CreditAccount.collection_name]
        ledger = self._db[LedgerEntry.collection_name]
        now = utcnow()

        account_filter: Dict[str, Any] = {"_id": user_id}
        if not allow_negative and delta < 0:
            account_filter["balance"] = {"$gte": -delta}

        # A guarded debit never upserts: a missing account has balance 0.
        doc = await accounts.find_one_and_update(
            account_filter,
            {
                "$inc": {"balance": delta, "entry_count": 1},
                "$set": {"updated_at": now},
                "$setOnInsert": {"user_id": user_id, "created_at": now},
            },
            upsert="balance" not in account_filter,
            return_document=ReturnDocument.AFTER,
            session=session,
        )

        if doc is None:
            current = await accounts.find_one({"_id": user_id}, session=session)
            balance = int(current["balance"]) if current else 0
            raise InsufficientCreditsError(
                f"balance {balance} cannot cover {delta}",
                user_id=user_id,
                current=balance,
                requested=-delta,
            )

        entry = LedgerEntry(
            user_id=user_id,
            delta=delta,
            balance_after=int(doc["balance"]),
            reason=reason,
            order_id=order_id,
            sequence=int(doc["entry_count"]),
            description=description,
            created_at=created_at or now,
        )
        try:
            await ledger.insert_one(self._prepare_insert(entry), session=session)
        except DuplicateKeyError as exc:
            raise DuplicatePurchaseError(
                f"purchase for order {order_id} already recorded", order_id=order_id
            ) from exc
        return entry

    async def get_ledger_entries(
        self,
        user_id: str,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> Iterable[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        query: Dict[str, Any] = {"user_id": user_id}
        if since is not None:
            query["created_at"] = {"$gte": since}
        cursor = col.find(query, session=self._session()).sort(
            [("created_at", DESCENDING), ("sequence", DESCENDING)]
        )
        if limit is not None:
            cursor = cursor.limit(limit)
        async with self._guard("get_ledger_entries"):
            docs = await cursor.to_list(length=limit)
        return [self._decode(LedgerEntry, d) for d in docs]  # type: ignore[misc]

    async def get_purchase_entry(self, order_id: str) -> Optional[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        async with self._guard("get_purchase_entry"):
            doc = await col.find_one(
                {"order_id": order_id, "reason": LedgerReason.PURCHASE.value},
                session=self._session(),
            )
        return self._decode(LedgerEntry, doc)

    # Checkout sessions
    async def add_checkout_session(self, session: CheckoutSession) -> CheckoutSession:
        col = self._db[CheckoutSession.collection_name]
        data = self._prepare_insert(session)
        async with self._guard("add_checkout_session"):
            await col.insert_one(data, session=self._session())
        return session

    async def get_checkout_session(self, session_id: str) -> Optional[CheckoutSession]:
        col = self._db[CheckoutSession.collection_name]
        async with self._guard("get_checkout_session"):
            doc = await col.find_one({"_id": session_id}, session=self._session())
        return self._decode(CheckoutSession, doc)

    async def attach_provider_session(
        self, session_id: str, provider_session_id: str, payment_url: str
    ) -> Optional[CheckoutSession]:
        col = self._db[CheckoutSession.collection_name]
        async with self._guard("attach_provider_session"):
            doc = await col.find_one_and_update(
                {"_id": session_id},
                {"$set": {"provider_session_id": provider_session_id, "payment_url": payment_url}},
                return_document=ReturnDocument.AFTER,
                session=self._session(),
            )
        return self._decode(CheckoutSession, doc)

    async def claim_checkout_session(
        self, session_id: str, completed_at: datetime
    ) -> Optional[CheckoutSession]:
        col = self._db[CheckoutSession.collection_name]
        async with self._guard("claim_checkout_session"):
            doc = await col.find_one_and_update(
                {"_id": session_id, "status": CheckoutStatus.PENDING.value},
                {"$set": {"status": CheckoutStatus.COMPLETED.value, "completed_at": completed_at}},
                return_document=ReturnDocument.AFTER,
                session=self._session(),
            )
        return self._decode(CheckoutSession, doc)

    async def release_checkout_session(self, session_id: str) -> bool:
        if await self.get_purchase_entry(session_id) is not None:
            return False
        col = self._db[CheckoutSession.collection_name]
        async with self._guard("release_checkout_session"):
            result = await col.update_one(
                {"_id": session_id, "status": CheckoutStatus.COMPLETED.value},
                {"$set": {"status": CheckoutStatus.PENDING.value}, "$unset": {"completed_at": ""}},
                session=self._session(),
            )
        return result.modified_count == 1

    async def purge_pending_sessions(self, cutoff: datetime, mark_only: bool = False) -> int:
        col = self._db[CheckoutSession.collection_name]
        query = {"status": CheckoutStatus.PENDING.value, "created_at": {"$lt": cutoff}}
        async with self._guard("purge_pending_sessions"):
            if mark_only:
                result = await col.update_many(
                    query,
                    {"$set": {"status": CheckoutStatus.ABANDONED.value, "abandoned_at": utcnow()}},
                )
                return result.modified_count
            result = await col.delete_many(query)
        return result.deleted_count

    # System events
    async def add_system_event(self, event: SystemEvent) -> SystemEvent:
        col = self._db[SystemEvent.collection_name]
        data = self._prepare_insert(event)
        async with self._guard("add_system_event"):
            await col.insert_one(data)
        return event

    async def get_system_events(self, since: Optional[datetime] = None) -> Iterable[SystemEvent]:
        col = self._db[SystemEvent.collection_name]
        query: Dict[str, Any] = {} if since is None else {"created_at": {"$gte": since}}
        async with self._guard("get_system_events"):
            docs = await col.find(query).sort("created_at", ASCENDING).to_list(length=None)
        return [self._decode(SystemEvent, d) for d in docs]  # type: ignore[misc]

    async def purge_system_events(self, cutoff: datetime) -> int:
        col = self._db[SystemEvent.collection_name]
        async with self._guard("purge_system_events"):
            result = await col.delete_many({"created_at": {"$lt": cutoff}})
        return result.deleted_count
