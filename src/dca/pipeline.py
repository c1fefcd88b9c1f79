"""Per-plan execution pipeline: size, convert, then optionally deposit.

Sequence per due plan:
  1. Resolve sizing (momentum factor * risk multiplier)
  2. CONVERT: swap the trade amount into the target asset and deliver it
     (a failed delivery is retried as a DELIVER transfer, never a new swap)
  3. DEPOSIT (yield-routed plans only): lend the received amount into the
     current best lending market

Every fund-moving call is preceded by a pending ledger row under a
deterministic idempotency key and carries a bounded timeout. A failed
deposit never rolls back a completed convert; the tick is then PARTIAL.

Phase errors are recorded and returned as a TickResult, never raised.
"""

import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal

import structlog

from dca.analysis.sizing import SizingService
from dca.config import ChainSettings
from dca.exceptions import (
    ChainExecutionError,
    DeliveryError,
    InsufficientBalance,
    LedgerConflict,
    MarketFeedError,
    NoMarketsAvailable,
    ValidationError,
)
from dca.execution.executor import ChainExecutor
from dca.ledger import TransactionLedger, phase_key, tick_key
from dca.logging import get_logger
from dca.markets.ranker import MarketRanker
from dca.models import (
    Market,
    Plan,
    PlanStatus,
    TickOutcome,
    TradeSizing,
    Transaction,
    TransactionPhase,
    TransactionStatus,
)

logger = get_logger(__name__)

_CONVERT_SUFFIX = f":{TransactionPhase.CONVERT.value}"


def _describe(exc: BaseException) -> str:
    if isinstance(exc, TimeoutError):
        return "timed out"
    return str(exc) or type(exc).__name__


def _require_active(plan: Plan, action: str) -> None:
    if plan.status is PlanStatus.STOPPED:
        raise ValidationError(f"Cannot {action} on stopped plan {plan.id}")


@dataclass
class TickResult:
    """Aggregate outcome of one plan execution."""

    plan_id: str
    tick_key: str
    outcome: TickOutcome
    sizing: TradeSizing | None = None
    convert_tx: Transaction | None = None
    deposit_tx: Transaction | None = None
    deliver_tx: Transaction | None = None
    error: str | None = None


class ExecutionPipeline:
    """Runs one tick of a plan against the chain executor.

    Args:
        executor: Mock or live chain executor.
        sizing: Trade amount resolver.
        ranker: Best lending market source.
        ledger: Transaction ledger.
        settings: Chain settings (call timeout, asset names).
    """

    def __init__(
        self,
        executor: ChainExecutor,
        sizing: SizingService,
        ranker: MarketRanker,
        ledger: TransactionLedger,
        settings: ChainSettings,
    ) -> None:
        self._executor = executor
        self._sizing = sizing
        self._ranker = ranker
        self._ledger = ledger
        self._settings = settings

    async def execute(self, plan: Plan, due_at: float | None = None) -> TickResult:
        """Execute the tick of ``plan`` scheduled at ``due_at``.

        Re-executing the same tick resumes from the ledger: a completed
        convert is not submitted again, and a pending one (unknown outcome)
        blocks the tick. A convert whose output was not delivered is retried
        as a transfer only.
        """
        key = tick_key(plan.id, plan.due_at if due_at is None else due_at)
        log = logger.bind(plan_id=plan.id, tick=key)
        convert_key = phase_key(key, TransactionPhase.CONVERT)

        existing = await self._ledger.find_live(convert_key)
        if existing is not None and existing.status is TransactionStatus.PENDING:
            log.critical(
                "convert_outcome_unknown",
                tx_id=existing.id,
                note="Pending convert from an earlier attempt, not resubmitting",
            )
            return TickResult(
                plan_id=plan.id,
                tick_key=key,
                outcome=TickOutcome.FAILED,
                convert_tx=existing,
                error="previous convert submission has unknown outcome",
            )

        sizing: TradeSizing | None = None
        deliver_tx: Transaction | None = None
        if existing is not None:
            log.info("convert_already_completed", tx_id=existing.id, tx_hash=existing.tx_hash)
            convert_tx = existing
            if not plan.yield_routing:
                deliver_tx = await self._redeliver(plan, key, convert_tx, log)
        else:
            sizing = await self._sizing.resolve(plan)
            convert_tx, deliver_tx = await self._convert(plan, key, sizing, log)
            if convert_tx.status is not TransactionStatus.COMPLETED:
                return TickResult(
                    plan_id=plan.id,
                    tick_key=key,
                    outcome=TickOutcome.FAILED,
                    sizing=sizing,
                    convert_tx=convert_tx,
                    error=convert_tx.error,
                )

        if deliver_tx is not None and deliver_tx.status is not TransactionStatus.COMPLETED:
            return TickResult(
                plan_id=plan.id,
                tick_key=key,
                outcome=TickOutcome.FAILED,
                sizing=sizing,
                convert_tx=convert_tx,
                deliver_tx=deliver_tx,
                error=deliver_tx.error or "previous delivery submission has unknown outcome",
            )

        if not plan.yield_routing:
            return TickResult(
                plan_id=plan.id,
                tick_key=key,
                outcome=TickOutcome.COMPLETED,
                sizing=sizing,
                convert_tx=convert_tx,
                deliver_tx=deliver_tx,
            )

        deposit_tx = await self._deposit(plan, key, convert_tx, log)
        completed = deposit_tx.status is TransactionStatus.COMPLETED
        return TickResult(
            plan_id=plan.id,
            tick_key=key,
            outcome=TickOutcome.COMPLETED if completed else TickOutcome.PARTIAL,
            sizing=sizing,
            convert_tx=convert_tx,
            deposit_tx=deposit_tx,
            error=None if completed else deposit_tx.error,
        )

    async def retry_deposit(self, plan: Plan) -> TickResult:
        """Retry only the deposit phase of the plan's latest completed convert.

        Raises:
            ValidationError: If the plan is stopped, does not route to yield,
                or has no completed conversion.
            LedgerConflict: If that conversion's deposit is pending or completed.
        """
        _require_active(plan, "retry a deposit")
        if not plan.yield_routing:
            raise ValidationError(f"Plan {plan.id} does not route conversions to yield")

        history = await self._ledger.history(plan.id)
        converts = [
            tx
            for tx in history
            if tx.phase is TransactionPhase.CONVERT
            and tx.status is TransactionStatus.COMPLETED
            and tx.idempotency_key.endswith(_CONVERT_SUFFIX)
        ]
        if not converts:
            raise ValidationError(f"Plan {plan.id} has no completed conversion to deposit")

        convert_tx = converts[-1]
        key = convert_tx.idempotency_key.removesuffix(_CONVERT_SUFFIX)
        live = await self._ledger.find_live(phase_key(key, TransactionPhase.DEPOSIT))
        if live is not None:
            raise LedgerConflict(
                f"Deposit for tick {key} is already {live.status.value}"
            )

        log = logger.bind(plan_id=plan.id, tick=key)
        log.info("deposit_retry_requested", convert_tx=convert_tx.id)
        deposit_tx = await self._deposit(plan, key, convert_tx, log)
        completed = deposit_tx.status is TransactionStatus.COMPLETED
        return TickResult(
            plan_id=plan.id,
            tick_key=key,
            outcome=TickOutcome.COMPLETED if completed else TickOutcome.PARTIAL,
            convert_tx=convert_tx,
            deposit_tx=deposit_tx,
            error=None if completed else deposit_tx.error,
        )

    async def lend(self, plan: Plan, amount: Decimal) -> Transaction:
        """Manually deposit ``amount`` into the best market on behalf of a plan.

        Raises:
            ValidationError: If the plan is stopped or amount is not positive.
            NoMarketsAvailable: If no live market is selected.
            ChainExecutionError: If the deposit fails (recorded as failed first).
        """
        _require_active(plan, "lend")
        if amount <= 0:
            raise ValidationError(f"Lend amount must be positive, got {amount}")

        market = await self._live_market()
        position_ref = await self._ledger.current_position_ref()
        key = f"{plan.id}:lend:{uuid.uuid4().hex}"
        tx = await self._ledger.begin(
            plan.id, TransactionPhase.DEPOSIT, amount, key, asset=market.asset_name
        )
        try:
            result = await self._call(self._executor.deposit(amount, market, position_ref))
        except ChainExecutionError as e:
            await self._ledger.fail(tx, _describe(e))
            raise
        except TimeoutError as e:
            await self._ledger.fail(tx, _describe(e))
            raise ChainExecutionError(f"Deposit into {market.asset_name} timed out") from e
        return await self._ledger.complete(tx, result.tx_hash, position_ref=result.position_ref)

    async def withdraw(self, plan: Plan, amount: Decimal) -> Transaction:
        """Withdraw ``amount`` of a plan's deposited principal.

        Allowed on stopped plans, so principal can always be returned.

        Raises:
            ValidationError: If amount is not positive.
            InsufficientBalance: If the plan's principal is below ``amount``.
            NoMarketsAvailable: If the deposited asset's market is unknown.
            ChainExecutionError: If the withdrawal fails (recorded as failed first).
        """
        if amount <= 0:
            raise ValidationError(f"Withdraw amount must be positive, got {amount}")

        principal = await self._ledger.plan_principal(plan.id)
        if principal < amount:
            raise InsufficientBalance(
                f"Plan {plan.id} has {principal} deposited, cannot withdraw {amount}"
            )

        deposit = await self._ledger.last_transaction(plan.id, TransactionPhase.DEPOSIT)
        position_ref = (
            deposit.position_ref
            if deposit is not None and deposit.position_ref
            else self._settings.lending_position_id
        )
        market = await self._market_for(deposit.asset if deposit is not None else None)

        key = f"{plan.id}:withdraw:{uuid.uuid4().hex}"
        tx = await self._ledger.begin(
            plan.id, TransactionPhase.WITHDRAW, amount, key, asset=market.asset_name
        )
        try:
            tx_hash = await self._call(self._executor.withdraw(amount, position_ref, market))
        except ChainExecutionError as e:
            await self._ledger.fail(tx, _describe(e))
            raise
        except TimeoutError as e:
            await self._ledger.fail(tx, _describe(e))
            raise ChainExecutionError(f"Withdraw from {market.asset_name} timed out") from e
        return await self._ledger.complete(tx, tx_hash, position_ref=position_ref)

    async def _convert(
        self,
        plan: Plan,
        key: str,
        sizing: TradeSizing,
        log: structlog.stdlib.BoundLogger,
    ) -> tuple[Transaction, Transaction | None]:
        """Submit the convert of a tick.

        Returns the convert row and, when the swap settled but its output
        could not be delivered, the failed delivery row.
        """
        amount = sizing.trade_amount
        # Yield-routed funds stay in custody so the service account can lend them
        destination = self._executor.address if plan.yield_routing else plan.destination

        tx = await self._ledger.begin(
            plan.id,
            TransactionPhase.CONVERT,
            amount,
            phase_key(key, TransactionPhase.CONVERT),
            asset=self._settings.source_asset,
        )
        if amount <= 0:
            return await self._ledger.fail(tx, f"trade amount {amount} is not positive"), None

        try:
            result = await self._call(self._executor.convert(amount, destination))
        except DeliveryError as e:
            log.error(
                "convert_delivery_failed",
                swap_hash=e.swap_hash,
                amount_out=str(e.amount_out),
                destination=destination,
                error=str(e),
            )
            convert_tx = await self._ledger.complete(
                tx, e.swap_hash, received_amount=e.amount_out
            )
            deliver_tx = await self._ledger.begin(
                plan.id,
                TransactionPhase.DELIVER,
                e.amount_out,
                phase_key(key, TransactionPhase.DELIVER),
                asset=self._settings.target_asset,
            )
            return convert_tx, await self._ledger.fail(deliver_tx, _describe(e))
        except (ChainExecutionError, TimeoutError) as e:
            log.error("convert_failed", amount=str(amount), error=_describe(e))
            return await self._ledger.fail(tx, _describe(e)), None

        log.info(
            "convert_completed",
            tx_hash=result.tx_hash,
            amount_in=str(result.amount_in),
            amount_out=str(result.amount_out),
            destination=destination,
        )
        convert_tx = await self._ledger.complete(
            tx, result.tx_hash, received_amount=result.amount_out
        )
        return convert_tx, None

    async def _redeliver(
        self,
        plan: Plan,
        key: str,
        convert_tx: Transaction,
        log: structlog.stdlib.BoundLogger,
    ) -> Transaction | None:
        """Transfer a completed convert's output that never reached the user.

        Returns None when the output was delivered together with the swap.
        """
        deliver_key = phase_key(key, TransactionPhase.DELIVER)
        live = await self._ledger.find_live(deliver_key)
        if live is not None:
            if live.status is TransactionStatus.PENDING:
                log.critical(
                    "delivery_outcome_unknown",
                    tx_id=live.id,
                    note="Pending delivery from an earlier attempt, not resubmitting",
                )
            return live

        history = await self._ledger.history(plan.id)
        if not any(tx.idempotency_key == deliver_key for tx in history):
            return None

        amount = convert_tx.received_amount or Decimal("0")
        tx = await self._ledger.begin(
            plan.id,
            TransactionPhase.DELIVER,
            amount,
            deliver_key,
            asset=self._settings.target_asset,
        )
        try:
            tx_hash = await self._call(self._executor.deliver(amount, plan.destination))
        except (ChainExecutionError, TimeoutError) as e:
            log.error("delivery_failed", amount=str(amount), error=_describe(e))
            return await self._ledger.fail(tx, _describe(e))

        log.info(
            "delivery_completed",
            tx_hash=tx_hash,
            amount=str(amount),
            destination=plan.destination,
        )
        return await self._ledger.complete(tx, tx_hash, received_amount=amount)

    async def _deposit(
        self,
        plan: Plan,
        key: str,
        convert_tx: Transaction,
        log: structlog.stdlib.BoundLogger,
    ) -> Transaction:
        deposit_key = phase_key(key, TransactionPhase.DEPOSIT)
        existing = await self._ledger.find_live(deposit_key)
        if existing is not None:
            if existing.status is TransactionStatus.PENDING:
                log.critical(
                    "deposit_outcome_unknown",
                    tx_id=existing.id,
                    note="Pending deposit from an earlier attempt, not resubmitting",
                )
            return existing

        amount = convert_tx.received_amount or Decimal("0")
        try:
            market = await self._live_market()
        except (NoMarketsAvailable, MarketFeedError, TimeoutError) as e:
            log.error("deposit_no_market", error=_describe(e))
            tx = await self._ledger.begin(plan.id, TransactionPhase.DEPOSIT, amount, deposit_key)
            return await self._ledger.fail(tx, _describe(e))

        tx = await self._ledger.begin(
            plan.id, TransactionPhase.DEPOSIT, amount, deposit_key, asset=market.asset_name
        )
        if amount <= 0:
            return await self._ledger.fail(tx, "conversion produced nothing to deposit")

        position_ref = await self._ledger.current_position_ref()

        try:
            result = await self._call(self._executor.deposit(amount, market, position_ref))
        except (ChainExecutionError, TimeoutError) as e:
            log.error(
                "deposit_failed",
                amount=str(amount),
                asset=market.asset_name,
                error=_describe(e),
            )
            return await self._ledger.fail(tx, _describe(e))

        log.info(
            "deposit_completed",
            tx_hash=result.tx_hash,
            amount=str(amount),
            asset=market.asset_name,
            apy=str(market.total_deposit_apy),
        )
        return await self._ledger.complete(tx, result.tx_hash, position_ref=result.position_ref)

    async def _live_market(self) -> Market:
        entry = await self._call(self._ranker.get_best())
        if not entry.is_live:
            raise NoMarketsAvailable("Only fallback market data is available; refusing to deposit")
        return entry.market

    async def _market_for(self, asset_name: str | None) -> Market:
        if asset_name is not None:
            for market in self._ranker.get_markets():
                if market.asset_name == asset_name:
                    return market
            entry = self._ranker.peek()
            if entry is not None and entry.market.asset_name == asset_name:
                return entry.market
        return await self._live_market()

    async def _call(self, coro):  # type: ignore[no-untyped-def]
        return await asyncio.wait_for(coro, timeout=self._settings.call_timeout_seconds)

