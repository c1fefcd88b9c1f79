"""Plan lifecycle: validated creation, stop, lookup and per-user totals."""

import re
import time
import uuid
from decimal import Decimal, InvalidOperation

from dca.data.store import PlanStore
from dca.exceptions import ValidationError
from dca.ledger import TransactionLedger
from dca.logging import get_logger
from dca.models import FrequencyUnit, Plan, PlanStatus, RiskTier

logger = get_logger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{1,64}$")


def _parse_amount(amount: object) -> Decimal:
    if amount is None or isinstance(amount, bool):
        raise ValidationError("amount is required")
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValidationError(f"amount {amount!r} is not a number") from e
    if not value.is_finite() or value <= 0:
        raise ValidationError(f"amount must be positive, got {amount}")
    return value


def _parse_enum(enum_cls, value: object, field: str):  # type: ignore[no-untyped-def]
    try:
        return enum_cls(value)
    except ValueError as e:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"{field} must be one of: {allowed}") from e


class PlanService:
    """Creates and manages recurring plans.

    Args:
        store: Plan persistence.
        ledger: Transaction ledger (for investment totals).
    """

    def __init__(self, store: PlanStore, ledger: TransactionLedger) -> None:
        self._store = store
        self._ledger = ledger

    async def create_plan(
        self,
        user_id: str,
        amount: object,
        frequency: str,
        destination: str,
        interval: int = 1,
        risk_tier: str = RiskTier.NO_RISK.value,
        yield_routing: bool = False,
    ) -> Plan:
        """Validate a plan request and persist it as active.

        Raises:
            ValidationError: On a missing user, non-positive amount, unknown
                frequency or risk tier, interval below 1, or malformed address.
        """
        if not user_id or not str(user_id).strip():
            raise ValidationError("user_id is required")
        if not destination or not _ADDRESS_RE.match(destination):
            raise ValidationError(f"destination {destination!r} is not a valid address")
        if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
            raise ValidationError(f"interval must be an integer >= 1, got {interval!r}")

        plan = Plan(
            id=uuid.uuid4().hex,
            user_id=str(user_id).strip(),
            amount=_parse_amount(amount),
            frequency=_parse_enum(FrequencyUnit, frequency, "frequency"),
            interval=interval,
            destination=destination,
            risk_tier=_parse_enum(RiskTier, risk_tier, "risk_tier"),
            yield_routing=bool(yield_routing),
            status=PlanStatus.ACTIVE,
            created_at=time.time(),
        )
        await self._store.insert_plan(plan)

        logger.info(
            "plan_created",
            plan_id=plan.id,
            user_id=plan.user_id,
            amount=str(plan.amount),
            frequency=plan.frequency.value,
            interval=plan.interval,
            risk_tier=plan.risk_tier.value,
            yield_routing=plan.yield_routing,
        )
        return plan

    async def stop_plan(self, plan_id: str) -> Plan:
        """Stop a plan. Takes effect at the plan's next eligibility check.

        Raises:
            PlanNotFound: If no plan has this id.
        """
        await self._store.update_status(plan_id, PlanStatus.STOPPED)
        logger.info("plan_stopped", plan_id=plan_id)
        return await self._store.get_plan(plan_id)

    async def get_plan(self, plan_id: str) -> Plan:
        return await self._store.get_plan(plan_id)

    async def list_user_plans(self, user_id: str) -> list[Plan]:
        return await self._store.list_user_plans(user_id)

    async def total_investment(self, user_id: str) -> Decimal:
        """Source amount converted across all of a user's plans."""
        return await self._ledger.total_converted(user_id)

    async def deposit_balance(self, user_id: str) -> Decimal:
        """Principal a user currently has deposited in lending markets."""
        return await self._ledger.deposit_principal(user_id)
