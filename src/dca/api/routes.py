"""JSON endpoints for plans, lending markets, deposits and interest quotes.

Decimals are always rendered as strings. Domain errors raised by the
services are translated to HTTP status codes by the app's exception handler.
"""

import time
from decimal import Decimal, InvalidOperation
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from dca.exceptions import ValidationError
from dca.logging import get_logger
from dca.markets.cache import BestMarketEntry
from dca.models import Plan, Transaction
from dca.pipeline import TickResult

log = get_logger(__name__)

router = APIRouter()


def _decimal_to_str(obj: Any) -> Any:
    """Recursively convert Decimal values to strings for JSON serialization."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, dict):
        return {k: _decimal_to_str(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_decimal_to_str(item) for item in obj]
    return obj


def _transaction_json(tx: Transaction) -> dict:
    return _decimal_to_str({
        "id": tx.id,
        "plan_id": tx.plan_id,
        "phase": tx.phase.value,
        "status": tx.status.value,
        "amount": tx.amount,
        "received_amount": tx.received_amount,
        "asset": tx.asset,
        "tx_hash": tx.tx_hash,
        "position_ref": tx.position_ref,
        "error": tx.error,
        "created_at": tx.created_at,
        "updated_at": tx.updated_at,
    })


def _plan_json(plan: Plan) -> dict:
    return {
        "id": plan.id,
        "user_id": plan.user_id,
        "amount": str(plan.amount),
        "frequency": plan.frequency.value,
        "interval": plan.interval,
        "destination": plan.destination,
        "risk_tier": plan.risk_tier.value,
        "yield_routing": plan.yield_routing,
        "status": plan.status.value,
        "created_at": plan.created_at,
        "last_run_at": plan.last_run_at,
        "next_run_at": plan.due_at,
        "transaction_ids": list(plan.transaction_ids),
    }


def _tick_json(result: TickResult) -> dict:
    return {
        "plan_id": result.plan_id,
        "tick": result.tick_key,
        "outcome": result.outcome.value,
        "convert": _transaction_json(result.convert_tx) if result.convert_tx else None,
        "deposit": _transaction_json(result.deposit_tx) if result.deposit_tx else None,
        "deliver": _transaction_json(result.deliver_tx) if result.deliver_tx else None,
        "error": result.error,
    }


def _market_entry_json(entry: BestMarketEntry, is_fresh: bool) -> dict:
    market = entry.market
    return _decimal_to_str({
        "asset_name": market.asset_name,
        "token_address": market.token_address,
        "decimals": market.decimals,
        "market_size": market.market_size,
        "total_borrowed": market.total_borrowed,
        "deposit_apy": market.deposit_apy,
        "extra_deposit_apy": market.extra_deposit_apy,
        "total_deposit_apy": market.total_deposit_apy,
        "borrow_apy": market.borrow_apy,
        "price": market.price,
        "ltv": market.ltv,
        "selected_at": entry.selected_at,
        "age_seconds": round(entry.age_seconds(), 3),
        "source": entry.source.value,
        "is_fresh": is_fresh,
        "candidates": entry.candidates,
    })


async def _json_body(request: Request, required: tuple[str, ...]) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Invalid JSON body") from e
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    for field in required:
        if body.get(field) in (None, ""):
            raise ValidationError(f"Missing required field: {field}")
    return body


def _decimal_field(body: dict, field: str) -> Decimal:
    value = body[field]
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        parsed = Decimal(str(value))
    except InvalidOperation as e:
        raise ValidationError(f"{field} must be a number") from e
    if not parsed.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return parsed


# ──────────────────────────────────────────────
# Plans
# ──────────────────────────────────────────────


@router.post("/plans")
async def create_plan(request: Request) -> JSONResponse:
    """Create a recurring plan."""
    body = await _json_body(request, ("user_id", "amount", "frequency", "destination"))
    plan = await request.app.state.plan_service.create_plan(
        user_id=body["user_id"],
        amount=body["amount"],
        frequency=body["frequency"],
        destination=body["destination"],
        interval=body.get("interval", 1),
        risk_tier=body.get("risk_tier", "no_risk"),
        yield_routing=bool(body.get("yield_routing", False)),
    )
    return JSONResponse(content=_plan_json(plan), status_code=201)


@router.post("/plans/{plan_id}/stop")
async def stop_plan(plan_id: str, request: Request) -> JSONResponse:
    plan = await request.app.state.plan_service.stop_plan(plan_id)
    return JSONResponse(content=_plan_json(plan))


@router.get("/plans/{plan_id}")
async def get_plan(plan_id: str, request: Request) -> JSONResponse:
    """Plan details with scheduler state and the last transaction outcome."""
    plan = await request.app.state.plan_service.get_plan(plan_id)
    last_tx = await request.app.state.ledger.last_transaction(plan_id)
    content = _plan_json(plan)
    content["state"] = request.app.state.runner.state_of(plan).value
    content["last_transaction"] = _transaction_json(last_tx) if last_tx else None
    content["last_status"] = last_tx.status.value if last_tx else None
    content["last_error"] = last_tx.error if last_tx else None
    return JSONResponse(content=content)


@router.get("/plans/{plan_id}/transactions")
async def get_plan_transactions(plan_id: str, request: Request) -> JSONResponse:
    await request.app.state.plan_service.get_plan(plan_id)
    txs = await request.app.state.ledger.history(plan_id)
    return JSONResponse(content=[_transaction_json(tx) for tx in txs])


@router.post("/plans/{plan_id}/deposit/retry")
async def retry_deposit(plan_id: str, request: Request) -> JSONResponse:
    """Retry the deposit phase of the latest partially completed tick."""
    async with request.app.state.runner.lock_for(plan_id):
        plan = await request.app.state.plan_service.get_plan(plan_id)
        result = await request.app.state.pipeline.retry_deposit(plan)
    log.info("deposit_retried_via_api", plan_id=plan_id, outcome=result.outcome.value)
    return JSONResponse(content=_tick_json(result))


@router.post("/plans/{plan_id}/lend")
async def lend(plan_id: str, request: Request) -> JSONResponse:
    body = await _json_body(request, ("amount",))
    amount = _decimal_field(body, "amount")
    async with request.app.state.runner.lock_for(plan_id):
        plan = await request.app.state.plan_service.get_plan(plan_id)
        tx = await request.app.state.pipeline.lend(plan, amount)
    return JSONResponse(content=_transaction_json(tx))


@router.post("/plans/{plan_id}/withdraw")
async def withdraw(plan_id: str, request: Request) -> JSONResponse:
    body = await _json_body(request, ("amount",))
    amount = _decimal_field(body, "amount")
    async with request.app.state.runner.lock_for(plan_id):
        plan = await request.app.state.plan_service.get_plan(plan_id)
        tx = await request.app.state.pipeline.withdraw(plan, amount)
    return JSONResponse(content=_transaction_json(tx))


# ──────────────────────────────────────────────
# Users
# ──────────────────────────────────────────────


@router.get("/users/{user_id}/plans")
async def list_user_plans(user_id: str, request: Request) -> JSONResponse:
    plans = await request.app.state.plan_service.list_user_plans(user_id)
    return JSONResponse(content=[_plan_json(plan) for plan in plans])


@router.get("/users/{user_id}/total-investment")
async def total_investment(user_id: str, request: Request) -> JSONResponse:
    """Sum of completed conversion amounts across the user's plans."""
    total = await request.app.state.plan_service.total_investment(user_id)
    return JSONResponse(content={"user_id": user_id, "total_investment": str(total)})


@router.get("/users/{user_id}/deposit-balance")
async def deposit_balance(user_id: str, request: Request) -> JSONResponse:
    balance = await request.app.state.plan_service.deposit_balance(user_id)
    return JSONResponse(content={"user_id": user_id, "deposit_balance": str(balance)})


# ──────────────────────────────────────────────
# Markets and interest
# ──────────────────────────────────────────────


@router.get("/markets/best")
async def best_market(request: Request) -> JSONResponse:
    ranker = request.app.state.ranker
    entry = await ranker.get_best()
    return JSONResponse(content=_market_entry_json(entry, ranker.is_fresh(entry)))


@router.post("/markets/refresh")
async def refresh_markets(request: Request) -> JSONResponse:
    ranker = request.app.state.ranker
    entry = await ranker.refresh()
    log.info("markets_refreshed_via_api", asset=entry.market.asset_name)
    return JSONResponse(content=_market_entry_json(entry, ranker.is_fresh(entry)))


@router.post("/interest")
async def calculate_interest(request: Request) -> JSONResponse:
    """Theoretical simple interest on ``amount`` deposited at ``timestamp`` (ms)."""
    body = await _json_body(request, ("amount", "timestamp"))
    amount = _decimal_field(body, "amount")
    if amount < 0:
        raise ValidationError("amount must not be negative")
    timestamp = body["timestamp"]
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        raise ValidationError("timestamp must be an integer in milliseconds")

    quote = await request.app.state.interest.quote(amount, timestamp)
    return JSONResponse(content=_decimal_to_str({
        "amount": quote.principal,
        "timestamp": quote.deposited_at_ms,
        "elapsed_ms": quote.elapsed_ms,
        "annual_apy": quote.apy,
        "asset": quote.asset,
        "interest": quote.interest,
        "is_live": quote.is_live,
    }))


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    runner = request.app.state.runner
    entry = request.app.state.ranker.peek()
    return JSONResponse(content={
        "status": "ok",
        "time": time.time(),
        "scheduler": runner.get_status(),
        "best_market": entry.market.asset_name if entry else None,
        "best_market_source": entry.source.value if entry else None,
    })
