"""Usage operation ledger: stores, models and the Start/Finalize protocol."""

from .models import (
    CreditEntry,
    EntryReason,
    EntryType,
    OperationStatus,
    UsageOperation,
    UsageStats,
)
from .stores import BalanceStore, OperationStore
from .memory import MemoryBalanceStore, MemoryOperationStore
from .sql import SqlBalanceStore, SqlOperationStore
from .usage import Ledger

__all__ = [
    "CreditEntry",
    "EntryReason",
    "EntryType",
    "OperationStatus",
    "UsageOperation",
    "UsageStats",
    "BalanceStore",
    "OperationStore",
    "MemoryBalanceStore",
    "MemoryOperationStore",
    "SqlBalanceStore",
    "SqlOperationStore",
    "Ledger",
]
