"""Persistence contracts consumed by the Ledger.

Both stores only need per-key atomicity: a balance mutation touches one user,
a transition touches one operation. Nothing here spans two records.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable

from .models import CreditEntry, EntryType, OperationStatus, UsageOperation, UsageStats


class BalanceStore(ABC):
    """Owns the non-negative credit balance per user and its journal."""

    @abstractmethod
    def get_balance(self, user_id: str) -> int:
        """Current credits; 0 for a user that has never been written."""

    @abstractmethod
    def decrement(
        self,
        user_id: str,
        amount: int,
        *,
        reason: str,
        operation_id: str | None = None,
        entry_type: EntryType = EntryType.DEBIT,
        allow_partial: bool = False,
        metadata: Any = None,
    ) -> int:
        """Atomically remove ``amount`` credits and return what was charged.

        Raises InsufficientCredits without touching the balance when
        ``credits < amount``, unless ``allow_partial`` is set, in which case
        ``min(amount, credits)`` is charged. Returns 0 when an entry for
        ``(operation_id, reason)`` already exists.
        """

    @abstractmethod
    def increment(
        self,
        user_id: str,
        amount: int,
        *,
        reason: str,
        operation_id: str | None = None,
        entry_type: EntryType = EntryType.REFUND,
        metadata: Any = None,
    ) -> int:
        """Atomically add ``amount`` credits. Never rejected.

        Returns the amount credited, or 0 when an entry for
        ``(operation_id, reason)`` already exists.
        """

    @abstractmethod
    def list_entries(
        self,
        user_id: str | None = None,
        *,
        reason: str | None = None,
        since: str | None = None,
        before: str | None = None,
        limit: int | None = None,
    ) -> list[CreditEntry]:
        """Journal entries, newest first."""


class OperationStore(ABC):
    """Owns UsageOperation records and their three-state lifecycle."""

    @abstractmethod
    def create(self, operation: UsageOperation) -> str:
        """Persist a new record. Raises DuplicateOperation if the id exists."""

    @abstractmethod
    def get(self, operation_id: str) -> UsageOperation:
        """Raises OperationNotFound."""

    @abstractmethod
    def compare_and_transition(
        self,
        operation_id: str,
        expected: OperationStatus,
        new_status: OperationStatus,
        updates: dict[str, Any],
    ) -> bool:
        """Apply ``updates`` and ``new_status`` only if the current status is ``expected``.

        Returns False, with nothing written, when the status differs.
        Raises OperationNotFound for an unknown id.
        """

    @abstractmethod
    def mark_settled(self, operation_id: str) -> None:
        """Record that balance settlement has been applied. Idempotent."""

    @abstractmethod
    def list_operations(
        self,
        user_id: str,
        *,
        feature: str | None = None,
        status: OperationStatus | None = None,
        limit: int = 50,
    ) -> list[UsageOperation]:
        """Usage history for one user, newest first."""

    @abstractmethod
    def list_pending(self, older_than: str, limit: int = 500) -> list[UsageOperation]:
        ...

    @abstractmethod
    def list_unsettled(self, older_than: str, limit: int = 500) -> list[UsageOperation]:
        """Terminal operations whose settlement has not been recorded."""

    @abstractmethod
    def existing_ids(self, operation_ids: Iterable[str]) -> set[str]:
        ...

    @abstractmethod
    def usage_stats(self, since: str) -> UsageStats:
        ...
