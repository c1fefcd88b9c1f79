"""Tests for LiveChainExecutor delegation to the chain client.

Verifies:
- Human amounts become raw units by truncation
- Swap then transfer when the destination is another address
- No transfer when converting into the service account
- InsufficientBalance before any submission when custody is short
- A failed transfer after a settled swap raises DeliveryError, and deliver()
  retries the transfer without swapping again
- Deposits open a new lending position only when none is known
- Concurrent converts on the shared account each see their own output
- Client errors propagate unchanged
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, PropertyMock

import pytest

from dca.chain.client import ChainClient
from dca.config import ChainSettings
from dca.exceptions import ChainExecutionError, DeliveryError, InsufficientBalance
from dca.execution.live_executor import LiveChainExecutor, from_units, to_units

SERVICE = "0x" + "5" * 64
DEST = "0x" + "a" * 64


@pytest.fixture
def chain_client() -> AsyncMock:
    client = AsyncMock(spec=ChainClient)
    type(client).address = PropertyMock(return_value=SERVICE)
    client.swap.return_value = "0xswap"
    client.transfer.return_value = "0xtransfer"
    client.lend.return_value = "0xlend"
    client.withdraw.return_value = "0xwithdraw"
    return client


@pytest.fixture
def executor(chain_client: AsyncMock) -> LiveChainExecutor:
    return LiveChainExecutor(chain_client, ChainSettings(mode="live"))


def _balances(source_units: int, target_before: int, target_after: int) -> list[int]:
    """coin_balance results in call order: source check, target before, target after."""
    return [source_units, target_before, target_after]


def test_unit_conversion_truncates() -> None:
    assert to_units(Decimal("1.2345678"), 6) == 1_234_567
    assert from_units(1_234_567, 6) == Decimal("1.234567")


@pytest.mark.asyncio
async def test_convert_swaps_then_transfers(
    executor: LiveChainExecutor, chain_client: AsyncMock
) -> None:
    settings = ChainSettings()
    chain_client.coin_balance.side_effect = _balances(500_000_000, 0, 2_000_000_000)

    result = await executor.convert(Decimal("100"), DEST)

    chain_client.swap.assert_awaited_once_with(
        100_000_000, 0, settings.source_asset, settings.target_asset
    )
    chain_client.transfer.assert_awaited_once_with(settings.target_asset, DEST, 2_000_000_000)
    assert result.tx_hash == "0xtransfer"
    assert result.amount_out == Decimal("20")
    assert result.is_simulated is False


@pytest.mark.asyncio
async def test_convert_into_service_account_skips_transfer(
    executor: LiveChainExecutor, chain_client: AsyncMock
) -> None:
    chain_client.coin_balance.side_effect = _balances(500_000_000, 100, 1_100)

    result = await executor.convert(Decimal("1"), SERVICE)

    chain_client.transfer.assert_not_awaited()
    assert result.tx_hash == "0xswap"
    assert result.amount_out == Decimal("0.00001")


@pytest.mark.asyncio
async def test_convert_insufficient_balance_submits_nothing(
    executor: LiveChainExecutor, chain_client: AsyncMock
) -> None:
    chain_client.coin_balance.side_effect = [99_999_999]

    with pytest.raises(InsufficientBalance):
        await executor.convert(Decimal("100"), DEST)
    chain_client.swap.assert_not_awaited()


@pytest.mark.asyncio
async def test_convert_propagates_client_error(
    executor: LiveChainExecutor, chain_client: AsyncMock
) -> None:
    chain_client.coin_balance.side_effect = _balances(500_000_000, 0, 0)
    chain_client.swap.side_effect = ChainExecutionError("VM abort")

    with pytest.raises(ChainExecutionError, match="VM abort"):
        await executor.convert(Decimal("1"), DEST)


@pytest.mark.asyncio
async def test_failed_transfer_after_swap_raises_delivery_error(
    executor: LiveChainExecutor, chain_client: AsyncMock
) -> None:
    settings = ChainSettings()
    chain_client.coin_balance.side_effect = _balances(500_000_000, 0, 2_000_000_000) + [
        2_000_000_000
    ]
    chain_client.transfer.side_effect = [ChainExecutionError("mempool full"), "0xtransfer"]

    with pytest.raises(DeliveryError) as excinfo:
        await executor.convert(Decimal("100"), DEST)

    assert excinfo.value.swap_hash == "0xswap"
    assert excinfo.value.amount_out == Decimal("20")

    tx_hash = await executor.deliver(excinfo.value.amount_out, DEST)

    assert tx_hash == "0xtransfer"
    chain_client.swap.assert_awaited_once()
    assert chain_client.transfer.await_count == 2
    assert chain_client.transfer.await_args.args == (settings.target_asset, DEST, 2_000_000_000)


@pytest.mark.asyncio
async def test_deliver_requires_custody_balance(
    executor: LiveChainExecutor, chain_client: AsyncMock
) -> None:
    chain_client.coin_balance.return_value = 1_000

    with pytest.raises(InsufficientBalance):
        await executor.deliver(Decimal("20"), DEST)
    chain_client.transfer.assert_not_awaited()


@pytest.mark.asyncio
async def test_deposit_without_position_opens_one(
    executor: LiveChainExecutor, chain_client: AsyncMock, market_factory
) -> None:
    market = market_factory("APT")
    chain_client.coin_balance.return_value = 10**10

    result = await executor.deposit(Decimal("1.5"), market)

    chain_client.lend.assert_awaited_once_with(
        market.token_address, 150_000_000, "1", new_position=True
    )
    assert result.position_ref == "1"


@pytest.mark.asyncio
async def test_deposit_into_known_position_reuses_it(
    executor: LiveChainExecutor, chain_client: AsyncMock, market_factory
) -> None:
    market = market_factory("APT")
    chain_client.coin_balance.return_value = 10**10

    result = await executor.deposit(Decimal("2"), market, position_ref="7")

    chain_client.lend.assert_awaited_once_with(
        market.token_address, 200_000_000, "7", new_position=False
    )
    assert result.position_ref == "7"


@pytest.mark.asyncio
async def test_deposit_insufficient_balance(
    executor: LiveChainExecutor, chain_client: AsyncMock, market_factory
) -> None:
    chain_client.coin_balance.return_value = 0
    with pytest.raises(InsufficientBalance):
        await executor.deposit(Decimal("1"), market_factory("APT"))
    chain_client.lend.assert_not_awaited()


@pytest.mark.asyncio
async def test_withdraw_delegates(
    executor: LiveChainExecutor, chain_client: AsyncMock, market_factory
) -> None:
    market = market_factory("APT")
    tx_hash = await executor.withdraw(Decimal("0.5"), "1", market)

    assert tx_hash == "0xwithdraw"
    chain_client.withdraw.assert_awaited_once_with(market.token_address, 50_000_000, "1")


@pytest.mark.asyncio
async def test_get_balance_uses_asset_decimals(
    executor: LiveChainExecutor, chain_client: AsyncMock
) -> None:
    settings = ChainSettings()
    chain_client.coin_balance.return_value = 250_000_000

    assert await executor.get_balance(DEST, settings.target_asset) == Decimal("2.5")
    assert await executor.get_balance(DEST, settings.source_asset) == Decimal("250")


class _SharedCustodyClient(ChainClient):
    """In-memory client whose calls yield to the event loop, like real RPCs."""

    def __init__(self, source_units: int) -> None:
        settings = ChainSettings()
        self.source = settings.source_asset
        self.target = settings.target_asset
        self.balances = {self.source: source_units, self.target: 0}
        self.transfers: list[tuple[str, int]] = []

    @property
    def address(self) -> str:
        return SERVICE

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def coin_balance(self, address: str, asset: str) -> int:
        await asyncio.sleep(0)
        return self.balances[asset]

    async def swap(self, amount_in: int, min_amount_out: int, from_asset: str, to_asset: str) -> str:
        await asyncio.sleep(0)
        self.balances[from_asset] -= amount_in
        # 1 source unit (6 decimals) buys 20 target units (8 decimals)
        self.balances[to_asset] += amount_in * 20
        return f"0xswap{amount_in}"

    async def transfer(self, asset: str, recipient: str, amount: int) -> str:
        await asyncio.sleep(0)
        self.balances[asset] -= amount
        self.transfers.append((recipient, amount))
        return f"0xtransfer{amount}"

    async def lend(self, asset: str, amount: int, position_ref: str, new_position: bool) -> str:
        return "0xlend"

    async def withdraw(self, asset: str, amount: int, position_ref: str) -> str:
        return "0xwithdraw"


@pytest.mark.asyncio
async def test_concurrent_converts_measure_their_own_output() -> None:
    client = _SharedCustodyClient(source_units=1_000_000_000)
    executor = LiveChainExecutor(client, ChainSettings(mode="live"))
    other = "0x" + "b" * 64

    first, second = await asyncio.gather(
        executor.convert(Decimal("100"), DEST),
        executor.convert(Decimal("50"), other),
    )

    assert first.amount_out == Decimal("20")
    assert second.amount_out == Decimal("10")
    assert sorted(client.transfers) == sorted(
        [(DEST, 2_000_000_000), (other, 1_000_000_000)]
    )
    assert client.balances[client.target] == 0
