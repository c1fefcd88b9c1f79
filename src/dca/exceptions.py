"""Custom exceptions for the recurring investment engine.

All feed, execution and persistence exceptions live here
to avoid circular imports between modules.
"""

from decimal import Decimal


class DcaError(Exception):
    """Base exception for all engine errors."""


class ValidationError(DcaError):
    """Raised when a plan request is malformed. Fatal to the request."""


class PlanNotFound(DcaError):
    """Raised when a plan id does not exist in the store."""


class InsufficientHistory(DcaError):
    """Raised when there are too few price samples for a calculation."""


class PriceFeedError(DcaError):
    """Raised when historical prices cannot be fetched or parsed."""


class MarketFeedError(DcaError):
    """Raised when lending market snapshots cannot be fetched or parsed."""


class NoMarketsAvailable(DcaError):
    """Raised when no usable lending market exists to rank or deposit into."""


class ChainExecutionError(DcaError):
    """Raised when an on-chain operation fails (network, signing, VM abort)."""


class InsufficientBalance(ChainExecutionError):
    """Raised when the signing account cannot cover an operation."""


class LedgerConflict(DcaError):
    """Raised when a ledger write would violate idempotency or immutability."""


class DeliveryError(ChainExecutionError):
    """Raised when a swap settled but its output could not be delivered.

    The converted amount is held by the service account until delivered.
    """

    def __init__(self, message: str, swap_hash: str, amount_out: Decimal) -> None:
        super().__init__(message)
        self.swap_hash = swap_hash
        self.amount_out = amount_out
