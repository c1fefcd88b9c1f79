"""Aptos chain client implementation via aptos-sdk.

Builds entry-function payloads, signs them with the service account, submits
them and waits for execution. Every SDK or transport error is translated into
ChainExecutionError; VM aborts that indicate missing funds become
InsufficientBalance.
"""

import httpx
from aptos_sdk.account import Account
from aptos_sdk.account_address import AccountAddress
from aptos_sdk.async_client import ApiError, ResourceNotFound, RestClient
from aptos_sdk.bcs import Serializer
from aptos_sdk.transactions import EntryFunction, TransactionArgument, TransactionPayload
from aptos_sdk.type_tag import StructTag, TypeTag

from dca.chain.client import ChainClient
from dca.config import ChainSettings
from dca.exceptions import ChainExecutionError, InsufficientBalance
from dca.logging import get_logger

logger = get_logger(__name__)

_INSUFFICIENT_MARKERS = ("INSUFFICIENT_BALANCE", "EINSUFFICIENT_BALANCE", "insufficient")


def _type_tag(asset: str) -> TypeTag:
    return TypeTag(StructTag.from_str(asset))


def _chain_error(action: str, exc: Exception) -> ChainExecutionError:
    message = f"{action} failed: {exc}"
    if any(marker in str(exc) for marker in _INSUFFICIENT_MARKERS):
        return InsufficientBalance(message)
    return ChainExecutionError(message)


class AptosChainClient(ChainClient):
    """Concrete Aptos client using the aptos-sdk async RestClient.

    Args:
        settings: Node URL, private key and protocol module addresses.
    """

    def __init__(self, settings: ChainSettings) -> None:
        self._settings = settings
        private_key = settings.private_key.get_secret_value()
        if not private_key:
            raise ChainExecutionError("CHAIN_PRIVATE_KEY is required in live mode")
        self._account = Account.load_key(private_key)
        self._client: RestClient | None = None

    @property
    def address(self) -> str:
        return str(self._account.address())

    @property
    def rest(self) -> RestClient:
        if self._client is None:
            raise RuntimeError("Chain client not connected. Call connect() first.")
        return self._client

    async def connect(self) -> None:
        self._client = RestClient(self._settings.node_url)
        logger.info("aptos_client_connected", node_url=self._settings.node_url, account=self.address)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            logger.info("aptos_client_closed")

    async def coin_balance(self, address: str, asset: str) -> int:
        try:
            resource = await self.rest.account_resource(
                AccountAddress.from_str(address),
                f"0x1::coin::CoinStore<{asset}>",
            )
        except ResourceNotFound:
            return 0
        except (ApiError, httpx.HTTPError, ValueError) as e:
            raise _chain_error("balance query", e) from e
        return int(resource["data"]["coin"]["value"])

    async def swap(self, amount_in: int, min_amount_out: int, from_asset: str, to_asset: str) -> str:
        return await self._submit(
            self._settings.swap_module,
            self._settings.swap_function,
            [_type_tag(from_asset), _type_tag(to_asset)],
            [
                TransactionArgument(amount_in, Serializer.u64),
                TransactionArgument(min_amount_out, Serializer.u64),
            ],
        )

    async def transfer(self, asset: str, recipient: str, amount: int) -> str:
        return await self._submit(
            "0x1::aptos_account",
            "transfer_coins",
            [_type_tag(asset)],
            [
                TransactionArgument(AccountAddress.from_str(recipient), Serializer.struct),
                TransactionArgument(amount, Serializer.u64),
            ],
        )

    async def lend(self, asset: str, amount: int, position_ref: str, new_position: bool) -> str:
        return await self._submit(
            self._settings.lending_module,
            "lend",
            [_type_tag(asset)],
            [
                TransactionArgument(position_ref, Serializer.str),
                TransactionArgument(amount, Serializer.u64),
                TransactionArgument(new_position, Serializer.bool),
            ],
        )

    async def withdraw(self, asset: str, amount: int, position_ref: str) -> str:
        return await self._submit(
            self._settings.lending_module,
            "withdraw",
            [_type_tag(asset)],
            [
                TransactionArgument(position_ref, Serializer.str),
                TransactionArgument(amount, Serializer.u64),
            ],
        )

    async def _submit(
        self,
        module: str,
        function: str,
        type_args: list[TypeTag],
        args: list[TransactionArgument],
    ) -> str:
        """Sign, submit and wait for one entry-function call."""
        action = f"{module}::{function}"
        try:
            payload = EntryFunction.natural(module, function, type_args, args)
            signed = await self.rest.create_bcs_signed_transaction(
                self._account, TransactionPayload(payload)
            )
            tx_hash = await self.rest.submit_bcs_transaction(signed)
        except (ApiError, httpx.HTTPError, ValueError) as e:
            raise _chain_error(action, e) from e

        logger.info("aptos_transaction_submitted", function=action, tx_hash=tx_hash)

        try:
            await self.rest.wait_for_transaction(tx_hash)
        except Exception as e:
            # SDK versions differ in how VM failure and wait timeout surface
            raise _chain_error(action, e) from e

        return tx_hash
