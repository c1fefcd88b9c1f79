"""Tests for TransactionLedger lifecycle and aggregates."""

from decimal import Decimal

import pytest

from dca.data.store import PlanStore
from dca.exceptions import LedgerConflict
from dca.ledger import TransactionLedger, phase_key, tick_key
from dca.models import FrequencyUnit, Plan, TransactionPhase, TransactionStatus


async def _insert_plan(store: PlanStore, plan_id: str, user_id: str = "u1") -> None:
    await store.insert_plan(
        Plan(
            id=plan_id,
            user_id=user_id,
            amount=Decimal("10"),
            frequency=FrequencyUnit.DAY,
            interval=1,
            destination="0x" + "a" * 64,
        )
    )


def test_keys_are_deterministic() -> None:
    assert tick_key("p1", 1700000000.5) == "p1:1700000000500"
    assert phase_key("p1:1700000000500", TransactionPhase.DEPOSIT) == "p1:1700000000500:deposit"


@pytest.mark.asyncio
async def test_begin_complete(ledger: TransactionLedger, store: PlanStore) -> None:
    await _insert_plan(store, "p1")
    tx = await ledger.begin("p1", TransactionPhase.CONVERT, Decimal("10"), "p1:1:convert")
    assert tx.status is TransactionStatus.PENDING
    assert (await ledger.find_live("p1:1:convert")).id == tx.id  # type: ignore[union-attr]

    done = await ledger.complete(tx, "0xhash", received_amount=Decimal("2"))
    assert done.status is TransactionStatus.COMPLETED
    assert done.received_amount == Decimal("2")

    with pytest.raises(LedgerConflict):
        await ledger.begin("p1", TransactionPhase.CONVERT, Decimal("10"), "p1:1:convert")


@pytest.mark.asyncio
async def test_fail_frees_key(ledger: TransactionLedger, store: PlanStore) -> None:
    await _insert_plan(store, "p1")
    tx = await ledger.begin("p1", TransactionPhase.CONVERT, Decimal("10"), "k")
    failed = await ledger.fail(tx, "rpc down")

    assert failed.status is TransactionStatus.FAILED
    assert failed.error == "rpc down"
    assert await ledger.find_live("k") is None


@pytest.mark.asyncio
async def test_aggregates(ledger: TransactionLedger, store: PlanStore) -> None:
    await _insert_plan(store, "p1", "u1")
    await _insert_plan(store, "p2", "u1")

    c1 = await ledger.begin("p1", TransactionPhase.CONVERT, Decimal("10"), "c1")
    await ledger.complete(c1, "0x1")
    c2 = await ledger.begin("p2", TransactionPhase.CONVERT, Decimal("7.5"), "c2")
    await ledger.complete(c2, "0x2")
    c3 = await ledger.begin("p2", TransactionPhase.CONVERT, Decimal("99"), "c3")
    await ledger.fail(c3, "boom")

    d1 = await ledger.begin("p1", TransactionPhase.DEPOSIT, Decimal("4"), "d1")
    await ledger.complete(d1, "0x3")
    w1 = await ledger.begin("p1", TransactionPhase.WITHDRAW, Decimal("1.5"), "w1")
    await ledger.complete(w1, "0x4")

    assert await ledger.total_converted("u1") == Decimal("17.5")
    assert await ledger.deposit_principal("u1") == Decimal("2.5")
    assert await ledger.plan_principal("p1") == Decimal("2.5")
    assert await ledger.plan_principal("p2") == Decimal("0")

    last = await ledger.last_transaction("p2")
    assert last is not None and last.status is TransactionStatus.FAILED
    last_deposit = await ledger.last_transaction("p1", TransactionPhase.DEPOSIT)
    assert last_deposit is not None and last_deposit.tx_hash == "0x3"
