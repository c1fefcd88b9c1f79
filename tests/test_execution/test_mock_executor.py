"""Tests for MockChainExecutor simulated chain operations.

Verifies:
- Conversion at the configured price, debiting custody and crediting destination
- Deterministic transaction hashes for identical call sequences
- InsufficientBalance when custody cannot cover an amount
- One-shot failure injection, including delivery after a settled swap
- Deposit/withdraw position accounting
- is_simulated=True on all results
"""

from decimal import Decimal

import pytest

from dca.config import ChainSettings
from dca.exceptions import ChainExecutionError, DeliveryError, InsufficientBalance
from dca.execution.mock_executor import MockChainExecutor

DEST = "0x" + "a" * 64


@pytest.fixture
def executor(chain_settings: ChainSettings) -> MockChainExecutor:
    return MockChainExecutor(chain_settings)


@pytest.mark.asyncio
async def test_convert_uses_mock_price(
    executor: MockChainExecutor, chain_settings: ChainSettings
) -> None:
    result = await executor.convert(Decimal("100"), DEST)

    assert result.amount_in == Decimal("100")
    assert result.amount_out == Decimal("20")
    assert result.is_simulated is True
    assert result.tx_hash.startswith("0x") and len(result.tx_hash) == 66
    assert await executor.get_balance(executor.address, chain_settings.source_asset) == Decimal("900")
    assert await executor.get_balance(DEST, chain_settings.target_asset) == Decimal("20")


@pytest.mark.asyncio
async def test_hashes_are_deterministic(chain_settings: ChainSettings) -> None:
    a = MockChainExecutor(chain_settings)
    b = MockChainExecutor(chain_settings)

    hashes_a = [(await a.convert(Decimal("10"), DEST)).tx_hash for _ in range(3)]
    hashes_b = [(await b.convert(Decimal("10"), DEST)).tx_hash for _ in range(3)]

    assert hashes_a == hashes_b
    assert len(set(hashes_a)) == 3


@pytest.mark.asyncio
async def test_convert_insufficient_balance(executor: MockChainExecutor) -> None:
    with pytest.raises(InsufficientBalance):
        await executor.convert(Decimal("1000.01"), DEST)
    assert executor.get_history() == []


@pytest.mark.asyncio
async def test_insufficient_balance_is_chain_execution_error(executor: MockChainExecutor) -> None:
    with pytest.raises(ChainExecutionError):
        await executor.convert(Decimal("5000"), DEST)


@pytest.mark.asyncio
async def test_injected_failure_fires_once(executor: MockChainExecutor) -> None:
    executor.inject_failure("convert")

    with pytest.raises(ChainExecutionError, match="injected convert failure"):
        await executor.convert(Decimal("10"), DEST)

    result = await executor.convert(Decimal("10"), DEST)
    assert result.amount_out == Decimal("2")


@pytest.mark.asyncio
async def test_deposit_and_withdraw_track_position(
    executor: MockChainExecutor, chain_settings: ChainSettings, market_factory
) -> None:
    market = market_factory("APT", token_address=chain_settings.target_asset)
    await executor.convert(Decimal("100"), executor.address)

    deposit = await executor.deposit(Decimal("20"), market)
    assert deposit.position_ref == chain_settings.lending_position_id
    assert deposit.is_simulated is True
    assert executor.get_positions() == {chain_settings.lending_position_id: Decimal("20")}

    await executor.withdraw(Decimal("5"), deposit.position_ref, market)
    assert executor.get_positions()[deposit.position_ref] == Decimal("15")
    assert await executor.get_balance(executor.address, market.token_address) == Decimal("5")

    operations = [entry["operation"] for entry in executor.get_history()]
    assert operations == ["convert", "deposit", "withdraw"]


@pytest.mark.asyncio
async def test_deposit_without_funds_raises(
    executor: MockChainExecutor, market_factory
) -> None:
    with pytest.raises(InsufficientBalance):
        await executor.deposit(Decimal("1"), market_factory("APT"))


@pytest.mark.asyncio
async def test_withdraw_more_than_position_raises(
    executor: MockChainExecutor, market_factory
) -> None:
    with pytest.raises(InsufficientBalance):
        await executor.withdraw(Decimal("1"), "1", market_factory("APT"))


@pytest.mark.asyncio
async def test_failed_delivery_keeps_output_in_custody(
    executor: MockChainExecutor, chain_settings: ChainSettings
) -> None:
    executor.inject_failure("deliver")

    with pytest.raises(DeliveryError) as excinfo:
        await executor.convert(Decimal("10"), DEST)

    target = chain_settings.target_asset
    assert excinfo.value.amount_out == Decimal("2")
    assert await executor.get_balance(executor.address, target) == Decimal("2")
    assert await executor.get_balance(DEST, target) == Decimal("0")

    await executor.deliver(excinfo.value.amount_out, DEST)

    assert await executor.get_balance(executor.address, target) == Decimal("0")
    assert await executor.get_balance(DEST, target) == Decimal("2")
    operations = [entry["operation"] for entry in executor.get_history()]
    assert operations == ["convert", "deliver"]
