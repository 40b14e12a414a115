from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest

from credit_ledger.errors import DuplicatePurchaseError, InsufficientCreditsError, InvalidInputError
from credit_ledger.models.base import utcnow
from credit_ledger.models.ledger import LedgerReason
from credit_ledger.models.system_event import EventSeverity


@pytest.mark.asyncio
async def test_append_and_consume(ledger):
    user_id = "user-1"
    assert await ledger.get_balance(user_id) == 0

    assert await ledger.append_entry(user_id, 100, LedgerReason.PURCHASE, order_id="s-1") == 100
    assert await ledger.get_balance(user_id) == 100

    assert await ledger.consume_credits(user_id, 40) == 60
    assert await ledger.get_balance(user_id) == 60


@pytest.mark.asyncio
async def test_balance_after_is_running_sum(ledger):
    user_id = "user-1"
    for delta, reason in [(50, "purchase"), (-20, "usage"), (5, "adjustment"), (-35, "usage")]:
        await ledger.append_entry(user_id, delta, reason)

    entries = await ledger.list_recent(user_id)
    ordered = sorted(entries, key=lambda e: e.sequence)
    assert [e.sequence for e in ordered] == [1, 2, 3, 4]
    assert [e.balance_after for e in ordered] == [50, 30, 35, 0]
    # Most recent first.
    assert entries[0].sequence == 4

    result = await ledger.verify_account(user_id)
    assert result.consistent
    assert result.ledger_total == 0
    assert result.entry_count == 4


@pytest.mark.asyncio
async def test_consume_rejects_overdraft(ledger, db):
    user_id = "user-1"
    await ledger.append_entry(user_id, 5, LedgerReason.PURCHASE, order_id="s-1")

    with pytest.raises(InsufficientCreditsError):
        await ledger.consume_credits(user_id, 10)

    assert await ledger.get_balance(user_id) == 5
    assert len(list(await db.get_ledger_entries(user_id))) == 1
    warnings = [e for e in await db.get_system_events() if e.severity is EventSeverity.WARN]
    assert warnings and warnings[-1].event == "Credit update failed"


@pytest.mark.asyncio
async def test_adjustment_cannot_go_negative(ledger):
    await ledger.adjust_credits("user-1", 20, description="goodwill")
    with pytest.raises(InsufficientCreditsError):
        await ledger.adjust_credits("user-1", -21)
    assert await ledger.adjust_credits("user-1", -20) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("delta", [0, True, 1.5])
async def test_rejects_bad_delta(ledger, delta):
    with pytest.raises(InvalidInputError):
        await ledger.append_entry("user-1", delta, LedgerReason.ADJUSTMENT)


@pytest.mark.asyncio
async def test_rejects_unknown_reason(ledger):
    with pytest.raises(InvalidInputError):
        await ledger.append_entry("user-1", 10, "gift")


@pytest.mark.asyncio
async def test_second_purchase_for_same_order_is_rejected(ledger):
    await ledger.append_entry("user-1", 100, LedgerReason.PURCHASE, order_id="session-1")
    with pytest.raises(DuplicatePurchaseError):
        await ledger.append_entry("user-1", 100, LedgerReason.PURCHASE, order_id="session-1")
    assert await ledger.get_balance("user-1") == 100


@pytest.mark.asyncio
async def test_concurrent_consumption_never_overspends(ledger):
    user_id = "user-1"
    await ledger.append_entry(user_id, 10, LedgerReason.PURCHASE, order_id="s-1")

    results = await asyncio.gather(
        *(ledger.consume_credits(user_id, 1) for _ in range(15)), return_exceptions=True
    )

    succeeded = [r for r in results if isinstance(r, int)]
    failed = [r for r in results if isinstance(r, InsufficientCreditsError)]
    assert len(succeeded) == 10
    assert len(failed) == 5
    assert await ledger.get_balance(user_id) == 0
    assert (await ledger.verify_account(user_id)).consistent


@pytest.mark.asyncio
async def test_summary_uses_window_for_recent_and_full_balance_for_total(ledger):
    user_id = "user-1"
    now = utcnow()
    await ledger.append_entry(
        user_id, 200, LedgerReason.PURCHASE, order_id="old", occurred_at=now - timedelta(days=40)
    )
    await ledger.append_entry(
        user_id, 50, LedgerReason.PURCHASE, order_id="recent", occurred_at=now - timedelta(days=10)
    )
    await ledger.append_entry(user_id, -20, LedgerReason.USAGE, occurred_at=now - timedelta(days=5))

    summary = await ledger.summarize(user_id, as_of=now)

    assert summary.recent_purchases == 50
    assert summary.recent_usage == 20
    assert summary.total == 230
    assert [e.delta for e in summary.recent_entries] == [-20, 50]


@pytest.mark.asyncio
async def test_summary_caps_recent_entries(ledger):
    for i in range(5):
        await ledger.append_entry("user-1", 1, LedgerReason.ADJUSTMENT)
    summary = await ledger.summarize("user-1", max_entries=3)
    assert len(summary.recent_entries) == 3
    assert summary.total == 5
    assert summary.recent_purchases == 5


@pytest.mark.asyncio
async def test_summary_for_unknown_user_is_empty(ledger):
    summary = await ledger.summarize("nobody")
    assert (summary.total, summary.recent_purchases, summary.recent_usage) == (0, 0, 0)
    assert summary.recent_entries == []


@pytest.mark.asyncio
async def test_verify_account_flags_drift(ledger, db):
    await ledger.append_entry("user-1", 30, LedgerReason.PURCHASE, order_id="s-1")
    # Corrupt the cached balance behind the store's back.
    db._accounts["user-1"] = db._accounts["user-1"].model_copy(update={"balance": 31})

    result = await ledger.verify_account("user-1")

    assert not result.consistent
    assert result.cached_balance == 31
    assert result.ledger_total == 30
    critical = [e for e in await db.get_system_events() if e.severity is EventSeverity.CRITICAL]
    assert critical[-1].event == "Ledger inconsistency detected"


@pytest.mark.asyncio
async def test_writes_are_recorded_in_event_file(ledger, tmp_path):
    await ledger.append_entry("user-1", 10, LedgerReason.PURCHASE, order_id="s-1")

    lines = (tmp_path / "events.jsonl").read_text(encoding="utf-8").splitlines()
    record = json.loads(lines[-1])
    assert record["event"] == "Credits updated"
    assert record["user_id"] == "user-1"
    assert record["payload"]["balance_after"] == 10


@pytest.mark.asyncio
async def test_summary_with_zero_entries_keeps_totals(ledger):
    await ledger.append_entry("user-1", 7, LedgerReason.PURCHASE, order_id="s-1")

    summary = await ledger.summarize("user-1", max_entries=0)

    assert summary.recent_entries == []
    assert (summary.total, summary.recent_purchases) == (7, 7)
    with pytest.raises(InvalidInputError):
        await ledger.summarize("user-1", max_entries=-1)
