"""Append-only transaction ledger for plan executions.

Every on-chain submission is preceded by a pending row keyed by an
idempotency key. The row is then settled exactly once as completed or
failed. A key may be reused only after its previous attempt failed.
"""

import time
import uuid
from collections.abc import Iterable
from decimal import Decimal

from dca.data.store import PlanStore
from dca.logging import get_logger
from dca.models import Transaction, TransactionPhase, TransactionStatus

logger = get_logger(__name__)


def tick_key(plan_id: str, due_at: float) -> str:
    """Idempotency key for one scheduled execution of a plan."""
    return f"{plan_id}:{int(due_at * 1000)}"


def phase_key(key: str, phase: TransactionPhase) -> str:
    return f"{key}:{phase.value}"


class TransactionLedger:
    """Records the lifecycle of every convert, deposit and withdraw.

    Args:
        store: Persistence for transaction rows.
    """

    def __init__(self, store: PlanStore) -> None:
        self._store = store

    async def begin(
        self,
        plan_id: str,
        phase: TransactionPhase,
        amount: Decimal,
        idempotency_key: str,
        asset: str | None = None,
    ) -> Transaction:
        """Write the pending row for an operation about to be submitted.

        Raises:
            LedgerConflict: If a pending or completed row already holds the key.
        """
        now = time.time()
        tx = Transaction(
            id=uuid.uuid4().hex,
            plan_id=plan_id,
            phase=phase,
            status=TransactionStatus.PENDING,
            amount=amount,
            idempotency_key=idempotency_key,
            asset=asset,
            created_at=now,
            updated_at=now,
        )
        await self._store.insert_transaction(tx)
        logger.info(
            "transaction_pending",
            tx_id=tx.id,
            plan_id=plan_id,
            phase=phase.value,
            amount=str(amount),
            key=idempotency_key,
        )
        return tx

    async def complete(
        self,
        tx: Transaction,
        tx_hash: str,
        received_amount: Decimal | None = None,
        position_ref: str | None = None,
    ) -> Transaction:
        settled = await self._store.update_transaction_status(
            tx.id,
            TransactionStatus.COMPLETED,
            tx_hash=tx_hash,
            received_amount=received_amount,
            position_ref=position_ref,
        )
        logger.info(
            "transaction_completed",
            tx_id=tx.id,
            plan_id=tx.plan_id,
            phase=tx.phase.value,
            tx_hash=tx_hash,
        )
        return settled

    async def fail(self, tx: Transaction, error: str) -> Transaction:
        settled = await self._store.update_transaction_status(
            tx.id, TransactionStatus.FAILED, error=error
        )
        logger.warning(
            "transaction_failed",
            tx_id=tx.id,
            plan_id=tx.plan_id,
            phase=tx.phase.value,
            error=error,
        )
        return settled

    async def find_live(self, idempotency_key: str) -> Transaction | None:
        """Return the pending or completed transaction for a key."""
        return await self._store.find_live_transaction(idempotency_key)

    async def history(self, plan_id: str) -> list[Transaction]:
        """All transactions of a plan in creation order."""
        return await self._store.list_transactions(plan_id)

    async def last_transaction(
        self, plan_id: str, phase: TransactionPhase | None = None
    ) -> Transaction | None:
        txs = await self.history(plan_id)
        if phase is not None:
            txs = [tx for tx in txs if tx.phase is phase]
        return txs[-1] if txs else None

    async def current_position_ref(self) -> str | None:
        """Lending position the service account already holds, if any.

        All plans lend through one service account, so the position is shared.
        """
        return await self._store.latest_position_ref()

    async def total_converted(self, user_id: str) -> Decimal:
        """Sum of source amounts of a user's completed conversions."""
        txs = await self._store.list_user_transactions(
            user_id, phase=TransactionPhase.CONVERT, status=TransactionStatus.COMPLETED
        )
        return sum((tx.amount for tx in txs), Decimal("0"))

    async def deposit_principal(self, user_id: str) -> Decimal:
        """Completed deposits minus completed withdrawals for a user."""
        txs = await self._store.list_user_transactions(
            user_id, status=TransactionStatus.COMPLETED
        )
        return _net_deposits(txs)

    async def plan_principal(self, plan_id: str) -> Decimal:
        """Completed deposits minus completed withdrawals for one plan."""
        txs = await self.history(plan_id)
        return _net_deposits(tx for tx in txs if tx.status is TransactionStatus.COMPLETED)


def _net_deposits(txs: Iterable[Transaction]) -> Decimal:
    principal = Decimal("0")
    for tx in txs:
        if tx.phase is TransactionPhase.DEPOSIT:
            principal += tx.amount
        elif tx.phase is TransactionPhase.WITHDRAW:
            principal -= tx.amount
    return principal
