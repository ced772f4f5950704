"""meterd - two-phase credit metering ledger."""

__version__ = "1.0.0"

from .daemon.errors import (
    DuplicateOperation,
    InsufficientCredits,
    JobNotFound,
    LedgerError,
    OperationNotFound,
    TransactionConflict,
)
from .daemon.ledger import Ledger, OperationStatus, UsageOperation

__all__ = [
    "Ledger",
    "OperationStatus",
    "UsageOperation",
    "LedgerError",
    "InsufficientCredits",
    "OperationNotFound",
    "DuplicateOperation",
    "JobNotFound",
    "TransactionConflict",
    "__version__",
]
