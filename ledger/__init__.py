"""
Coin ledger

This package provides:
- An append-only transaction log per account and currency
- Balance changes through a compare-and-set primitive only
- A datastore with guarded updates, units of work and TTL counters
- Typed errors shared by every component built on the ledger
"""

from .errors import ErrorCode, LedgerError
from .models import (
    Account,
    Currency,
    Transaction,
    TransactionType,
    UserBalance,
)
from .service import LedgerService
from .store import InMemoryStorage

__all__ = [
    "ErrorCode",
    "LedgerError",
    "Account",
    "Currency",
    "Transaction",
    "TransactionType",
    "UserBalance",
    "LedgerService",
    "InMemoryStorage",
]
