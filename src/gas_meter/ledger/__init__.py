"""
Ledger store: durable per-project balances, counters, applied references
and deposit cursors.
"""

from .base import LedgerStore, reference_key, require_positive
from .memory import MemoryLedgerStore
from .postgres import PostgresLedgerStore, get_pool

__all__ = [
    "LedgerStore",
    "MemoryLedgerStore",
    "PostgresLedgerStore",
    "get_pool",
    "reference_key",
    "require_positive",
]
