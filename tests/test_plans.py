"""Tests for PlanService validation, lifecycle and totals.

Verifies:
- Valid requests persist an active plan with parsed enums and Decimal amount
- Invalid user, amount, frequency, interval, risk tier or address is rejected
- Stopping is idempotent and unknown plans raise PlanNotFound
- Totals come from completed ledger entries only
"""

from decimal import Decimal

import pytest

from dca.data.store import PlanStore
from dca.exceptions import PlanNotFound, ValidationError
from dca.ledger import TransactionLedger
from dca.models import FrequencyUnit, PlanStatus, RiskTier, TransactionPhase
from dca.plans import PlanService

USER_ADDRESS = "0x" + "a" * 64


@pytest.fixture
def service(store: PlanStore, ledger: TransactionLedger) -> PlanService:
    return PlanService(store, ledger)


@pytest.mark.asyncio
async def test_create_plan(service: PlanService, store: PlanStore) -> None:
    plan = await service.create_plan(
        "user-1",
        "25.5",
        "hour",
        USER_ADDRESS,
        interval=4,
        risk_tier="medium_risk",
        yield_routing=True,
    )

    stored = await store.get_plan(plan.id)
    assert stored.amount == Decimal("25.5")
    assert stored.frequency is FrequencyUnit.HOUR
    assert stored.interval == 4
    assert stored.risk_tier is RiskTier.MEDIUM_RISK
    assert stored.yield_routing is True
    assert stored.status is PlanStatus.ACTIVE
    assert stored.last_run_at is None


@pytest.mark.asyncio
async def test_defaults(service: PlanService) -> None:
    plan = await service.create_plan("user-1", 10, "day", "0x1")
    assert plan.interval == 1
    assert plan.risk_tier is RiskTier.NO_RISK
    assert plan.yield_routing is False


@pytest.mark.parametrize(
    "kwargs",
    [
        {"user_id": ""},
        {"amount": "0"},
        {"amount": "-5"},
        {"amount": "abc"},
        {"amount": "NaN"},
        {"amount": None},
        {"frequency": "week"},
        {"interval": 0},
        {"interval": 1.5},
        {"interval": True},
        {"risk_tier": "yolo"},
        {"destination": "not-an-address"},
        {"destination": "0x" + "f" * 65},
    ],
)
@pytest.mark.asyncio
async def test_create_plan_rejects_invalid(service: PlanService, kwargs: dict) -> None:
    request = {
        "user_id": "user-1",
        "amount": "10",
        "frequency": "day",
        "destination": USER_ADDRESS,
        **kwargs,
    }
    with pytest.raises(ValidationError):
        await service.create_plan(**request)


@pytest.mark.asyncio
async def test_stop_plan(service: PlanService) -> None:
    plan = await service.create_plan("user-1", "10", "minute", USER_ADDRESS)

    stopped = await service.stop_plan(plan.id)
    assert stopped.status is PlanStatus.STOPPED
    assert (await service.stop_plan(plan.id)).status is PlanStatus.STOPPED


@pytest.mark.asyncio
async def test_stop_unknown_plan(service: PlanService) -> None:
    with pytest.raises(PlanNotFound):
        await service.stop_plan("missing")


@pytest.mark.asyncio
async def test_list_user_plans(service: PlanService) -> None:
    await service.create_plan("user-1", "10", "day", USER_ADDRESS)
    await service.create_plan("user-1", "20", "day", USER_ADDRESS)
    await service.create_plan("user-2", "30", "day", USER_ADDRESS)

    plans = await service.list_user_plans("user-1")
    assert sorted(p.amount for p in plans) == [Decimal("10"), Decimal("20")]


@pytest.mark.asyncio
async def test_totals(service: PlanService, ledger: TransactionLedger) -> None:
    plan = await service.create_plan("user-1", "10", "day", USER_ADDRESS, yield_routing=True)

    convert = await ledger.begin(plan.id, TransactionPhase.CONVERT, Decimal("10"), "c1")
    await ledger.complete(convert, "0x1", received_amount=Decimal("2"))
    pending = await ledger.begin(plan.id, TransactionPhase.CONVERT, Decimal("10"), "c2")
    deposit = await ledger.begin(plan.id, TransactionPhase.DEPOSIT, Decimal("2"), "d1")
    await ledger.complete(deposit, "0x2")

    assert pending.status.value == "pending"
    assert await service.total_investment("user-1") == Decimal("10")
    assert await service.deposit_balance("user-1") == Decimal("2")
    assert await service.total_investment("nobody") == Decimal("0")
