"""Abstract chain client interface.

Defines the low-level contract the live executor depends on. Amounts here are
raw on-chain integer units; decimal conversion happens in the executor.
Implementations raise ChainExecutionError (or InsufficientBalance) and never
retry a submission.
"""

from abc import ABC, abstractmethod


class ChainClient(ABC):
    """Abstract base class for chain RPC/signing clients."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Address of the signing (service) account."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Open the RPC connection."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Clean up network resources."""
        ...

    @abstractmethod
    async def coin_balance(self, address: str, asset: str) -> int:
        """Return the raw balance of ``asset`` held by ``address`` (0 if none)."""
        ...

    @abstractmethod
    async def swap(self, amount_in: int, min_amount_out: int, from_asset: str, to_asset: str) -> str:
        """Swap ``from_asset`` into ``to_asset`` in the signing account. Returns tx hash."""
        ...

    @abstractmethod
    async def transfer(self, asset: str, recipient: str, amount: int) -> str:
        """Transfer ``amount`` of ``asset`` to ``recipient``. Returns tx hash."""
        ...

    @abstractmethod
    async def lend(self, asset: str, amount: int, position_ref: str, new_position: bool) -> str:
        """Deposit into a lending position. Returns tx hash."""
        ...

    @abstractmethod
    async def withdraw(self, asset: str, amount: int, position_ref: str) -> str:
        """Withdraw from a lending position. Returns tx hash."""
        ...
