"""Abstract chain executor interface.

Defines the capability set the execution pipeline depends on. Both
MockChainExecutor and LiveChainExecutor implement this ABC, so pipeline code
is identical regardless of chain mode.

No operation retries internally; retry policy lives in the scheduler.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from dca.models import ConversionResult, DepositResult, Market


class ChainExecutor(ABC):
    """Abstract base class for on-chain executors.

    The concrete executor (mock or live) is injected at startup based on
    ChainSettings.mode.
    """

    @property
    @abstractmethod
    def address(self) -> str:
        """Custody address of the service account that signs operations."""
        ...

    @abstractmethod
    async def convert(self, amount: Decimal, destination: str) -> ConversionResult:
        """Convert ``amount`` of the source asset into the target asset.

        Args:
            amount: Source asset amount (human units).
            destination: Address that receives the target asset.

        Returns:
            ConversionResult with the final tx hash and the received amount.

        Raises:
            InsufficientBalance: If the service account cannot cover ``amount``.
            DeliveryError: If the swap settled but the transfer to
                ``destination`` failed. The output stays in custody.
            ChainExecutionError: On any other failure.
        """
        ...

    @abstractmethod
    async def deliver(self, amount: Decimal, destination: str) -> str:
        """Transfer ``amount`` of the target asset from custody to ``destination``.

        Used to finish a conversion whose delivery failed. Returns the tx hash.
        """
        ...

    @abstractmethod
    async def deposit(
        self, amount: Decimal, market: Market, position_ref: str | None = None
    ) -> DepositResult:
        """Deposit ``amount`` of the market's asset into a lending position.

        ``position_ref`` names an existing position to add to. None opens
        the configured position as new.

        Raises:
            InsufficientBalance: If the service account cannot cover ``amount``.
            ChainExecutionError: On any other failure.
        """
        ...

    @abstractmethod
    async def withdraw(self, amount: Decimal, position_ref: str, market: Market) -> str:
        """Withdraw ``amount`` from a lending position. Returns the tx hash.

        Raises:
            InsufficientBalance: If the position holds less than ``amount``.
            ChainExecutionError: On any other failure.
        """
        ...

    @abstractmethod
    async def get_balance(self, address: str, asset: str) -> Decimal:
        """Return the balance of ``asset`` held by ``address`` (human units).

        Raises:
            ChainExecutionError: If the balance cannot be queried.
        """
        ...
