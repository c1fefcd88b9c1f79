"""Deterministic in-memory chain executor.

Used by tests and by environments without chain credentials. Balances live in
memory per (address, asset); conversions use a fixed price; transaction hashes
are derived from an operation counter, so the same call sequence always yields
the same hashes. All results have is_simulated=True.
"""

import asyncio
import hashlib
import time
from decimal import ROUND_DOWN, Decimal

from dca.config import ChainSettings
from dca.exceptions import ChainExecutionError, DeliveryError, InsufficientBalance
from dca.execution.executor import ChainExecutor
from dca.logging import get_logger
from dca.models import ConversionResult, DepositResult, Market

logger = get_logger(__name__)

MOCK_SERVICE_ADDRESS = "0x" + "d" * 64


class MockChainExecutor(ChainExecutor):
    """Simulated executor with in-memory balances and lending positions.

    Args:
        settings: Source/target assets, conversion price and starting balance.
        address: Service (custody) account address.
        latency: Seconds each operation sleeps before settling.
    """

    def __init__(
        self,
        settings: ChainSettings,
        address: str = MOCK_SERVICE_ADDRESS,
        latency: float = 0.0,
    ) -> None:
        self._settings = settings
        self._address = address
        self._latency = latency
        self._balances: dict[tuple[str, str], Decimal] = {
            (address, settings.source_asset): settings.mock_initial_balance,
        }
        self._positions: dict[str, Decimal] = {}
        self._failures: dict[str, ChainExecutionError] = {}
        self._sequence = 0
        self._history: list[dict] = []

    @property
    def address(self) -> str:
        return self._address

    def set_balance(self, address: str, asset: str, amount: Decimal) -> None:
        """Set a virtual balance."""
        self._balances[(address, asset)] = amount

    def get_virtual_balances(self) -> dict[tuple[str, str], Decimal]:
        return dict(self._balances)

    def get_positions(self) -> dict[str, Decimal]:
        return dict(self._positions)

    def get_history(self) -> list[dict]:
        """Return every settled operation in submission order."""
        return list(self._history)

    def inject_failure(self, operation: str, error: ChainExecutionError | None = None) -> None:
        """Make the next ``operation`` fail once.

        Operations are "convert", "deliver", "deposit" and "withdraw". A
        "deliver" failure also hits the transfer step of the next convert to
        an external destination, leaving its output in custody.
        """
        self._failures[operation] = error or ChainExecutionError(f"injected {operation} failure")

    async def convert(self, amount: Decimal, destination: str) -> ConversionResult:
        """Simulate a swap at ``mock_price`` and deliver to ``destination``."""
        await self._settle("convert")
        if amount <= 0:
            raise ChainExecutionError(f"Conversion amount must be positive, got {amount}")

        source = self._settings.source_asset
        target = self._settings.target_asset
        self._debit(self._address, source, amount)

        quantum = Decimal(1).scaleb(-self._settings.target_decimals)
        amount_out = (amount / self._settings.mock_price).quantize(quantum, rounding=ROUND_DOWN)
        self._credit(self._address, target, amount_out)

        tx_hash = self._next_hash("convert", amount, destination)
        self._record("convert", tx_hash, amount=amount, amount_out=amount_out, destination=destination)

        if destination != self._address:
            try:
                await self._settle("deliver")
            except ChainExecutionError as e:
                raise DeliveryError(
                    f"Swap {tx_hash} settled but delivery failed: {e}",
                    swap_hash=tx_hash,
                    amount_out=amount_out,
                ) from e
            self._debit(self._address, target, amount_out)
            self._credit(destination, target, amount_out)

        logger.info(
            "mock_convert_settled",
            tx_hash=tx_hash,
            amount_in=str(amount),
            amount_out=str(amount_out),
            destination=destination,
        )

        return ConversionResult(
            tx_hash=tx_hash,
            amount_in=amount,
            amount_out=amount_out,
            destination=destination,
            timestamp=time.time(),
            is_simulated=True,
        )

    async def deliver(self, amount: Decimal, destination: str) -> str:
        await self._settle("deliver")
        target = self._settings.target_asset
        self._debit(self._address, target, amount)
        self._credit(destination, target, amount)

        tx_hash = self._next_hash("deliver", amount, destination)
        self._record("deliver", tx_hash, amount=amount, destination=destination)
        logger.info("mock_deliver_settled", tx_hash=tx_hash, amount=str(amount))
        return tx_hash

    async def deposit(
        self, amount: Decimal, market: Market, position_ref: str | None = None
    ) -> DepositResult:
        """Move ``amount`` of the market asset from custody into a position."""
        await self._settle("deposit")
        if amount <= 0:
            raise ChainExecutionError(f"Deposit amount must be positive, got {amount}")

        self._debit(self._address, market.token_address, amount)
        if position_ref is None:
            position_ref = self._settings.lending_position_id
        self._positions[position_ref] = self._positions.get(position_ref, Decimal("0")) + amount

        tx_hash = self._next_hash("deposit", amount, market.token_address)
        self._record("deposit", tx_hash, amount=amount, asset=market.asset_name)

        logger.info(
            "mock_deposit_settled",
            tx_hash=tx_hash,
            amount=str(amount),
            asset=market.asset_name,
            position_ref=position_ref,
        )

        return DepositResult(
            tx_hash=tx_hash,
            position_ref=position_ref,
            amount=amount,
            asset=market.asset_name,
            timestamp=time.time(),
            is_simulated=True,
        )

    async def withdraw(self, amount: Decimal, position_ref: str, market: Market) -> str:
        await self._settle("withdraw")
        held = self._positions.get(position_ref, Decimal("0"))
        if amount <= 0 or amount > held:
            raise InsufficientBalance(
                f"Position {position_ref} holds {held}, cannot withdraw {amount}"
            )

        self._positions[position_ref] = held - amount
        self._credit(self._address, market.token_address, amount)

        tx_hash = self._next_hash("withdraw", amount, position_ref)
        self._record("withdraw", tx_hash, amount=amount, asset=market.asset_name)
        logger.info("mock_withdraw_settled", tx_hash=tx_hash, amount=str(amount))
        return tx_hash

    async def get_balance(self, address: str, asset: str) -> Decimal:
        return self._balances.get((address, asset), Decimal("0"))

    async def _settle(self, operation: str) -> None:
        if self._latency:
            await asyncio.sleep(self._latency)
        failure = self._failures.pop(operation, None)
        if failure is not None:
            logger.warning("mock_injected_failure", operation=operation, error=str(failure))
            raise failure

    def _debit(self, address: str, asset: str, amount: Decimal) -> None:
        balance = self._balances.get((address, asset), Decimal("0"))
        if balance < amount:
            raise InsufficientBalance(
                f"{address} holds {balance} of {asset}, needs {amount}"
            )
        self._balances[(address, asset)] = balance - amount

    def _credit(self, address: str, asset: str, amount: Decimal) -> None:
        self._balances[(address, asset)] = self._balances.get((address, asset), Decimal("0")) + amount

    def _next_hash(self, operation: str, amount: Decimal, subject: str) -> str:
        self._sequence += 1
        digest = hashlib.sha256(f"{self._sequence}:{operation}:{amount}:{subject}".encode())
        return "0x" + digest.hexdigest()

    def _record(self, operation: str, tx_hash: str, **details: object) -> None:
        self._history.append({"operation": operation, "tx_hash": tx_hash, **details})
