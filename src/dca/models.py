"""Shared data models for the recurring investment engine.

All monetary values, prices, APYs and factors use Decimal.
Plan and transaction times are Unix seconds; price samples are Unix milliseconds.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class FrequencyUnit(str, Enum):
    """Unit of a plan's recurrence interval."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def seconds(self) -> int:
        return _FREQUENCY_SECONDS[self]


_FREQUENCY_SECONDS = {
    FrequencyUnit.MINUTE: 60,
    FrequencyUnit.HOUR: 60 * 60,
    FrequencyUnit.DAY: 24 * 60 * 60,
}


class RiskTier(str, Enum):
    """User-selected risk tolerance."""

    NO_RISK = "no_risk"
    LOW_RISK = "low_risk"
    MEDIUM_RISK = "medium_risk"
    HIGH_RISK = "high_risk"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionPhase(str, Enum):
    CONVERT = "convert"
    DEPOSIT = "deposit"
    DELIVER = "deliver"  # transfer of converted funds after a failed delivery
    WITHDRAW = "withdraw"


class TickOutcome(str, Enum):
    """Aggregate result of one plan execution."""

    COMPLETED = "completed"
    PARTIAL = "partial"  # convert completed, deposit failed
    FAILED = "failed"


@dataclass
class Plan:
    """A user's recurring conversion + investment instruction."""

    id: str
    user_id: str
    amount: Decimal  # base (source asset) units per execution
    frequency: FrequencyUnit
    interval: int
    destination: str
    risk_tier: RiskTier = RiskTier.NO_RISK
    yield_routing: bool = False
    status: PlanStatus = PlanStatus.ACTIVE
    created_at: float = field(default_factory=time.time)
    last_run_at: float | None = None
    transaction_ids: list[str] = field(default_factory=list)

    @property
    def interval_seconds(self) -> int:
        return self.frequency.seconds * self.interval

    @property
    def due_at(self) -> float:
        """Scheduled time of the next execution.

        A plan that has never run is due at its creation time.
        """
        if self.last_run_at is None:
            return self.created_at
        return self.last_run_at + self.interval_seconds

    def is_due(self, now: float) -> bool:
        """Stopped plans are never due."""
        if self.status is PlanStatus.STOPPED:
            return False
        return now >= self.due_at


@dataclass(frozen=True)
class PriceSample:
    timestamp_ms: int
    price: Decimal


@dataclass
class SizingDecision:
    """Momentum analysis of recent prices. Recomputed per execution, never persisted."""

    moving_average_7d: Decimal
    moving_average_30d: Decimal
    price_change_24h: Decimal  # percent
    momentum_factor: Decimal
    is_trend_up: bool
    is_fallback: bool = False
    fallback_reason: str | None = None

    @classmethod
    def neutral(cls, reason: str) -> "SizingDecision":
        """Neutral sizing used when analysis cannot run."""
        return cls(
            moving_average_7d=Decimal("0"),
            moving_average_30d=Decimal("0"),
            price_change_24h=Decimal("0"),
            momentum_factor=Decimal("1.0"),
            is_trend_up=False,
            is_fallback=True,
            fallback_reason=reason,
        )


@dataclass
class TradeSizing:
    """Sizing decision combined with the plan's risk tier."""

    decision: SizingDecision
    risk_multiplier: Decimal
    base_amount: Decimal
    trade_amount: Decimal


@dataclass
class Market:
    """Snapshot of one lending market. Amounts normalized by the asset's decimals."""

    asset_name: str
    token_address: str
    decimals: int
    market_size: Decimal = Decimal("0")
    total_borrowed: Decimal = Decimal("0")
    deposit_apy: Decimal = Decimal("0")
    extra_deposit_apy: Decimal = Decimal("0")
    borrow_apy: Decimal = Decimal("0")
    price: Decimal = Decimal("0")
    ltv: Decimal = Decimal("0")

    @property
    def total_deposit_apy(self) -> Decimal:
        """Combined deposit APY in percent (base + incentive)."""
        return self.deposit_apy + self.extra_deposit_apy


@dataclass
class Transaction:
    """Ledger entry for one submitted on-chain operation.

    Only the pending -> completed/failed transition is ever applied.
    """

    id: str
    plan_id: str
    phase: TransactionPhase
    status: TransactionStatus
    amount: Decimal
    idempotency_key: str
    tx_hash: str | None = None
    received_amount: Decimal | None = None
    asset: str | None = None
    position_ref: str | None = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


@dataclass
class ConversionResult:
    """Result of converting the source asset into the target asset."""

    tx_hash: str
    amount_in: Decimal
    amount_out: Decimal
    destination: str
    timestamp: float
    is_simulated: bool = False


@dataclass
class DepositResult:
    """Result of depositing into a lending market."""

    tx_hash: str
    position_ref: str
    amount: Decimal
    asset: str
    timestamp: float
    is_simulated: bool = False
