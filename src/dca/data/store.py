"""Typed SQLite read/write abstraction for plans and transactions.

Provides PlanStore with typed methods for inserting and querying plans and
ledger transactions. All SQL is isolated behind this interface.

CRITICAL: All monetary values stored as TEXT in SQLite, restored as Decimal on read.
"""

import asyncio
import time
from decimal import Decimal

import aiosqlite

from dca.data.database import PlanDatabase
from dca.exceptions import LedgerConflict, PlanNotFound
from dca.logging import get_logger
from dca.models import (
    FrequencyUnit,
    Plan,
    PlanStatus,
    RiskTier,
    Transaction,
    TransactionPhase,
    TransactionStatus,
)

logger = get_logger(__name__)

_PLAN_COLUMNS = (
    "id, user_id, amount, frequency, interval, destination, risk_tier, "
    "yield_routing, status, created_at, last_run_at"
)

_TX_COLUMNS = (
    "id, plan_id, phase, status, amount, idempotency_key, tx_hash, "
    "received_amount, asset, position_ref, error, created_at, updated_at"
)


def _optional_decimal(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _row_to_plan(row: tuple) -> Plan:
    return Plan(
        id=row[0],
        user_id=row[1],
        amount=Decimal(row[2]),
        frequency=FrequencyUnit(row[3]),
        interval=row[4],
        destination=row[5],
        risk_tier=RiskTier(row[6]),
        yield_routing=bool(row[7]),
        status=PlanStatus(row[8]),
        created_at=row[9],
        last_run_at=row[10],
    )


def _row_to_transaction(row: tuple) -> Transaction:
    return Transaction(
        id=row[0],
        plan_id=row[1],
        phase=TransactionPhase(row[2]),
        status=TransactionStatus(row[3]),
        amount=Decimal(row[4]),
        idempotency_key=row[5],
        tx_hash=row[6],
        received_amount=_optional_decimal(row[7]),
        asset=row[8],
        position_ref=row[9],
        error=row[10],
        created_at=row[11],
        updated_at=row[12],
    )


class PlanStore:
    """Async SQLite store for plans and ledger transactions.

    Writes are serialized through a single lock so that check-then-write
    sequences on the shared connection never interleave.

    Usage:
        async with PlanDatabase("data/dca.db") as database:
            store = PlanStore(database)
            await store.insert_plan(plan)
    """

    def __init__(self, database: PlanDatabase) -> None:
        self._database = database
        self._write_lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Plans
    # ──────────────────────────────────────────────

    async def insert_plan(self, plan: Plan) -> None:
        async with self._write_lock:
            await self._database.db.execute(
                f"INSERT INTO plans ({_PLAN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    plan.id,
                    plan.user_id,
                    str(plan.amount),
                    plan.frequency.value,
                    plan.interval,
                    plan.destination,
                    plan.risk_tier.value,
                    1 if plan.yield_routing else 0,
                    plan.status.value,
                    plan.created_at,
                    plan.last_run_at,
                ),
            )
            await self._database.db.commit()
        logger.debug("plan_inserted", plan_id=plan.id, user_id=plan.user_id)

    async def get_plan(self, plan_id: str) -> Plan:
        """Load a plan with its transaction ids in creation order.

        Raises:
            PlanNotFound: If no plan has this id.
        """
        cursor = await self._database.db.execute(
            f"SELECT {_PLAN_COLUMNS} FROM plans WHERE id = ?", (plan_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise PlanNotFound(f"Plan {plan_id} not found")
        plan = _row_to_plan(row)

        cursor = await self._database.db.execute(
            "SELECT id FROM transactions WHERE plan_id = ? ORDER BY created_at ASC, rowid ASC",
            (plan_id,),
        )
        plan.transaction_ids = [r[0] for r in await cursor.fetchall()]
        return plan

    async def list_active_plans(self) -> list[Plan]:
        cursor = await self._database.db.execute(
            f"SELECT {_PLAN_COLUMNS} FROM plans WHERE status = ? ORDER BY created_at ASC",
            (PlanStatus.ACTIVE.value,),
        )
        return [_row_to_plan(row) for row in await cursor.fetchall()]

    async def list_user_plans(self, user_id: str) -> list[Plan]:
        cursor = await self._database.db.execute(
            f"SELECT {_PLAN_COLUMNS} FROM plans WHERE user_id = ? ORDER BY created_at ASC",
            (user_id,),
        )
        return [_row_to_plan(row) for row in await cursor.fetchall()]

    async def update_last_run(self, plan_id: str, last_run_at: float) -> None:
        async with self._write_lock:
            await self._database.db.execute(
                "UPDATE plans SET last_run_at = ? WHERE id = ?",
                (last_run_at, plan_id),
            )
            await self._database.db.commit()

    async def update_status(self, plan_id: str, status: PlanStatus) -> None:
        """Set a plan's status.

        Raises:
            PlanNotFound: If no plan has this id.
        """
        async with self._write_lock:
            cursor = await self._database.db.execute(
                "UPDATE plans SET status = ? WHERE id = ?",
                (status.value, plan_id),
            )
            await self._database.db.commit()
        if cursor.rowcount == 0:
            raise PlanNotFound(f"Plan {plan_id} not found")

    # ──────────────────────────────────────────────
    # Transactions
    # ──────────────────────────────────────────────

    async def insert_transaction(self, tx: Transaction) -> None:
        """Insert a ledger row.

        Raises:
            LedgerConflict: If a non-failed row already uses the idempotency key.
        """
        async with self._write_lock:
            try:
                await self._database.db.execute(
                    f"INSERT INTO transactions ({_TX_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        tx.id,
                        tx.plan_id,
                        tx.phase.value,
                        tx.status.value,
                        str(tx.amount),
                        tx.idempotency_key,
                        tx.tx_hash,
                        str(tx.received_amount) if tx.received_amount is not None else None,
                        tx.asset,
                        tx.position_ref,
                        tx.error,
                        tx.created_at,
                        tx.updated_at,
                    ),
                )
                await self._database.db.commit()
            except aiosqlite.IntegrityError as e:
                await self._database.db.rollback()
                raise LedgerConflict(
                    f"Idempotency key {tx.idempotency_key} already has a live transaction"
                ) from e

    async def update_transaction_status(
        self,
        tx_id: str,
        status: TransactionStatus,
        tx_hash: str | None = None,
        received_amount: Decimal | None = None,
        position_ref: str | None = None,
        error: str | None = None,
    ) -> Transaction:
        """Move a pending transaction to a terminal status.

        Raises:
            LedgerConflict: If the transaction is missing or no longer pending.
        """
        async with self._write_lock:
            cursor = await self._database.db.execute(
                "UPDATE transactions SET status = ?, tx_hash = COALESCE(?, tx_hash), "
                "received_amount = COALESCE(?, received_amount), "
                "position_ref = COALESCE(?, position_ref), error = ?, updated_at = ? "
                "WHERE id = ? AND status = ?",
                (
                    status.value,
                    tx_hash,
                    str(received_amount) if received_amount is not None else None,
                    position_ref,
                    error,
                    time.time(),
                    tx_id,
                    TransactionStatus.PENDING.value,
                ),
            )
            await self._database.db.commit()
        if cursor.rowcount == 0:
            raise LedgerConflict(f"Transaction {tx_id} is not pending")
        tx = await self.get_transaction(tx_id)
        if tx is None:
            raise LedgerConflict(f"Transaction {tx_id} disappeared after update")
        return tx

    async def get_transaction(self, tx_id: str) -> Transaction | None:
        cursor = await self._database.db.execute(
            f"SELECT {_TX_COLUMNS} FROM transactions WHERE id = ?", (tx_id,)
        )
        row = await cursor.fetchone()
        return _row_to_transaction(row) if row else None

    async def find_live_transaction(self, idempotency_key: str) -> Transaction | None:
        """Return the pending or completed row for a key, if any."""
        cursor = await self._database.db.execute(
            f"SELECT {_TX_COLUMNS} FROM transactions "
            "WHERE idempotency_key = ? AND status != ?",
            (idempotency_key, TransactionStatus.FAILED.value),
        )
        row = await cursor.fetchone()
        return _row_to_transaction(row) if row else None

    async def latest_position_ref(self) -> str | None:
        """Position of the most recently settled deposit across all plans."""
        cursor = await self._database.db.execute(
            "SELECT position_ref FROM transactions "
            "WHERE phase = ? AND status = ? AND position_ref IS NOT NULL "
            "ORDER BY updated_at DESC, rowid DESC LIMIT 1",
            (TransactionPhase.DEPOSIT.value, TransactionStatus.COMPLETED.value),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def list_transactions(self, plan_id: str) -> list[Transaction]:
        cursor = await self._database.db.execute(
            f"SELECT {_TX_COLUMNS} FROM transactions WHERE plan_id = ? "
            "ORDER BY created_at ASC, rowid ASC",
            (plan_id,),
        )
        return [_row_to_transaction(row) for row in await cursor.fetchall()]

    async def list_user_transactions(
        self,
        user_id: str,
        phase: TransactionPhase | None = None,
        status: TransactionStatus | None = None,
    ) -> list[Transaction]:
        """List a user's transactions across all plans, optionally filtered."""
        conditions = ["p.user_id = ?"]
        params: list = [user_id]
        if phase is not None:
            conditions.append("t.phase = ?")
            params.append(phase.value)
        if status is not None:
            conditions.append("t.status = ?")
            params.append(status.value)

        where = " AND ".join(conditions)
        columns = ", ".join(f"t.{c.strip()}" for c in _TX_COLUMNS.split(","))
        cursor = await self._database.db.execute(
            f"SELECT {columns} FROM transactions t JOIN plans p ON p.id = t.plan_id "
            f"WHERE {where} ORDER BY t.created_at ASC, t.rowid ASC",
            params,
        )
        return [_row_to_transaction(row) for row in await cursor.fetchall()]
