"""Live chain executor via chain client.

Delegates all on-chain operations to the ChainClient (aptos-sdk wrapper).
Human amounts are converted to raw integer units by truncation, so the
executor never submits more than the caller asked for.

All plans share the one service account. Operations are serialized by a
single lock: the received amount is measured as a custody balance delta, and
the signer's sequence numbers must not race.

Implements the same ChainExecutor ABC as MockChainExecutor.
"""

import asyncio
import time
from decimal import ROUND_DOWN, Decimal

from dca.chain.client import ChainClient
from dca.config import ChainSettings
from dca.exceptions import ChainExecutionError, DeliveryError, InsufficientBalance
from dca.execution.executor import ChainExecutor
from dca.logging import get_logger
from dca.models import ConversionResult, DepositResult, Market

logger = get_logger(__name__)


def to_units(amount: Decimal, decimals: int) -> int:
    """Convert a human amount to raw on-chain units, truncating dust."""
    return int((amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


def from_units(units: int, decimals: int) -> Decimal:
    return Decimal(units) / (Decimal(10) ** decimals)


class LiveChainExecutor(ChainExecutor):
    """Real executor that signs with the service account through a chain client.

    Args:
        chain_client: Connected chain client.
        settings: Assets, decimals and lending position configuration.
    """

    def __init__(self, chain_client: ChainClient, settings: ChainSettings) -> None:
        self._client = chain_client
        self._settings = settings
        self._lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self._client.address

    async def convert(self, amount: Decimal, destination: str) -> ConversionResult:
        """Swap the source asset into the target asset, then deliver it.

        1. Check the service account covers ``amount``.
        2. Swap inside the service account.
        3. Measure the received amount from the balance delta.
        4. Transfer to ``destination`` unless it is the service account.

        The returned tx hash is the last transaction submitted. A failed
        transfer raises DeliveryError carrying the swap hash and output.
        """
        source = self._settings.source_asset
        target = self._settings.target_asset
        amount_in = to_units(amount, self._settings.source_decimals)
        if amount_in <= 0:
            raise ChainExecutionError(f"Conversion amount {amount} rounds to zero units")

        async with self._lock:
            available = await self._client.coin_balance(self.address, source)
            if available < amount_in:
                raise InsufficientBalance(
                    f"Service account holds {from_units(available, self._settings.source_decimals)}"
                    f" of source asset, needs {amount}"
                )

            before = await self._client.coin_balance(self.address, target)
            swap_hash = await self._client.swap(amount_in, 0, source, target)
            after = await self._client.coin_balance(self.address, target)
            received = max(after - before, 0)
            amount_out = from_units(received, self._settings.target_decimals)

            logger.info(
                "live_swap_settled",
                tx_hash=swap_hash,
                amount_in=str(amount),
                received_units=received,
            )

            tx_hash = swap_hash
            if destination != self.address:
                if received <= 0:
                    raise ChainExecutionError(
                        f"Swap {swap_hash} produced no target asset to deliver"
                    )
                try:
                    tx_hash = await self._client.transfer(target, destination, received)
                except ChainExecutionError as e:
                    logger.error(
                        "live_delivery_failed",
                        swap_hash=swap_hash,
                        received_units=received,
                        destination=destination,
                        error=str(e),
                    )
                    raise DeliveryError(
                        f"Swap {swap_hash} settled but delivery failed: {e}",
                        swap_hash=swap_hash,
                        amount_out=amount_out,
                    ) from e
                logger.info("live_transfer_settled", tx_hash=tx_hash, destination=destination)

        return ConversionResult(
            tx_hash=tx_hash,
            amount_in=amount,
            amount_out=amount_out,
            destination=destination,
            timestamp=time.time(),
            is_simulated=False,
        )

    async def deliver(self, amount: Decimal, destination: str) -> str:
        target = self._settings.target_asset
        units = to_units(amount, self._settings.target_decimals)
        if units <= 0:
            raise ChainExecutionError(f"Delivery amount {amount} rounds to zero units")

        async with self._lock:
            available = await self._client.coin_balance(self.address, target)
            if available < units:
                raise InsufficientBalance(
                    f"Service account holds {from_units(available, self._settings.target_decimals)}"
                    f" of target asset, needs {amount}"
                )
            tx_hash = await self._client.transfer(target, destination, units)

        logger.info(
            "live_delivery_settled",
            tx_hash=tx_hash,
            amount=str(amount),
            destination=destination,
        )
        return tx_hash

    async def deposit(
        self, amount: Decimal, market: Market, position_ref: str | None = None
    ) -> DepositResult:
        """Lend ``amount`` of the market asset from the service account."""
        units = to_units(amount, market.decimals)
        if units <= 0:
            raise ChainExecutionError(f"Deposit amount {amount} rounds to zero units")

        new_position = position_ref is None
        ref = self._settings.lending_position_id if position_ref is None else position_ref

        async with self._lock:
            available = await self._client.coin_balance(self.address, market.token_address)
            if available < units:
                raise InsufficientBalance(
                    f"Service account holds {from_units(available, market.decimals)}"
                    f" {market.asset_name}, needs {amount}"
                )
            tx_hash = await self._client.lend(
                market.token_address, units, ref, new_position=new_position
            )

        logger.info(
            "live_deposit_settled",
            tx_hash=tx_hash,
            amount=str(amount),
            asset=market.asset_name,
            position_ref=ref,
            new_position=new_position,
        )

        return DepositResult(
            tx_hash=tx_hash,
            position_ref=ref,
            amount=amount,
            asset=market.asset_name,
            timestamp=time.time(),
            is_simulated=False,
        )

    async def withdraw(self, amount: Decimal, position_ref: str, market: Market) -> str:
        units = to_units(amount, market.decimals)
        if units <= 0:
            raise ChainExecutionError(f"Withdraw amount {amount} rounds to zero units")
        async with self._lock:
            tx_hash = await self._client.withdraw(market.token_address, units, position_ref)
        logger.info(
            "live_withdraw_settled",
            tx_hash=tx_hash,
            amount=str(amount),
            asset=market.asset_name,
        )
        return tx_hash

    async def get_balance(self, address: str, asset: str) -> Decimal:
        units = await self._client.coin_balance(address, asset)
        return from_units(units, self._decimals_for(asset))

    def _decimals_for(self, asset: str) -> int:
        if asset == self._settings.target_asset:
            return self._settings.target_decimals
        return self._settings.source_decimals
