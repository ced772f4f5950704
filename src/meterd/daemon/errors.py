"""Ledger exception hierarchy.

Kept free of imports from the rest of the package so the db layer can raise
these without pulling in the ledger.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for every error raised by the ledger and its stores."""


class InsufficientCredits(LedgerError):
    def __init__(self, user_id: str, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits for {user_id}. Required: {required}, Available: {available}"
        )


class OperationNotFound(LedgerError):
    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Usage operation {operation_id} not found")


class DuplicateOperation(LedgerError):
    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Usage operation {operation_id} already exists")


class JobNotFound(LedgerError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Usage job {job_id} not found")


class TransactionConflict(LedgerError):
    """Transient lock or serialization failure. Retried with backoff before surfacing."""
