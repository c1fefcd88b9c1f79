"""Plan and transaction persistence layer.

Provides SQLite database management and a typed read/write store for
investment plans and the transaction ledger.
"""

from dca.data.database import PlanDatabase
from dca.data.store import PlanStore

__all__ = [
    "PlanDatabase",
    "PlanStore",
]
