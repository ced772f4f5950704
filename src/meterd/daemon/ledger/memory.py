"""In-process stores honouring the same atomicity contract as the SQL stores.

Suitable for tests and single-process embedding; state is lost on exit.
"""

from __future__ import annotations

import copy
import threading
import uuid
from collections import defaultdict
from typing import Any, Iterable

from ..errors import DuplicateOperation, InsufficientCredits, OperationNotFound
from .models import (
    CreditEntry,
    EntryType,
    OperationStatus,
    TERMINAL_STATUSES,
    UsageOperation,
    UsageStats,
    utc_now_iso,
)
from .stores import BalanceStore, OperationStore

_OPERATION_FIELDS = {"cost", "refund", "result", "error_message"}


class MemoryBalanceStore(BalanceStore):
    def __init__(self, initial: dict[str, int] | None = None) -> None:
        self._credits: dict[str, int] = {}
        self._entries: list[CreditEntry] = []
        self._entry_keys: set[tuple[str, str]] = set()
        self._user_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()
        self._journal_lock = threading.Lock()
        for user_id, credits in (initial or {}).items():
            self.increment(user_id, credits, reason="grant", entry_type=EntryType.CREDIT)

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._user_locks[user_id]

    def _already_applied(self, operation_id: str | None, reason: str) -> bool:
        return operation_id is not None and (operation_id, str(reason)) in self._entry_keys

    def _append(self, user_id, entry_type, reason, delta, balance_after, operation_id, metadata) -> None:
        entry = CreditEntry(
            id=uuid.uuid4().hex,
            user_id=user_id,
            entry_type=entry_type,
            reason=str(reason),
            delta=delta,
            balance_after=balance_after,
            operation_id=operation_id,
            metadata=copy.deepcopy(metadata),
        )
        with self._journal_lock:
            self._entries.append(entry)
            if operation_id is not None:
                self._entry_keys.add((operation_id, str(reason)))

    def get_balance(self, user_id: str) -> int:
        return self._credits.get(user_id, 0)

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
        if amount <= 0:
            return 0
        with self._lock_for(user_id):
            if self._already_applied(operation_id, reason):
                return 0
            current = self._credits.get(user_id, 0)
            if current < amount and not allow_partial:
                raise InsufficientCredits(user_id, amount, current)
            charged = min(amount, current)
            self._credits[user_id] = current - charged
            if charged < amount:
                metadata = {**(metadata or {}), "requested": amount, "shortfall": amount - charged}
            self._append(user_id, entry_type, reason, -charged, current - charged, operation_id, metadata)
            return charged

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
        if amount <= 0:
            return 0
        with self._lock_for(user_id):
            if self._already_applied(operation_id, reason):
                return 0
            balance = self._credits.get(user_id, 0) + amount
            self._credits[user_id] = balance
            self._append(user_id, entry_type, reason, amount, balance, operation_id, metadata)
            return amount

    def list_entries(
        self,
        user_id: str | None = None,
        *,
        reason: str | None = None,
        since: str | None = None,
        before: str | None = None,
        limit: int | None = None,
    ) -> list[CreditEntry]:
        with self._journal_lock:
            entries = list(self._entries)
        out = []
        for entry in reversed(entries):
            if user_id is not None and entry.user_id != user_id:
                continue
            if reason is not None and entry.reason != reason:
                continue
            if since is not None and entry.created_at < since:
                continue
            if before is not None and entry.created_at >= before:
                continue
            out.append(copy.deepcopy(entry))
            if limit is not None and len(out) >= limit:
                break
        return out


class MemoryOperationStore(OperationStore):
    def __init__(self) -> None:
        self._operations: dict[str, UsageOperation] = {}
        self._lock = threading.Lock()

    def create(self, operation: UsageOperation) -> str:
        with self._lock:
            if operation.id in self._operations:
                raise DuplicateOperation(operation.id)
            self._operations[operation.id] = copy.deepcopy(operation)
        return operation.id

    def get(self, operation_id: str) -> UsageOperation:
        with self._lock:
            op = self._operations.get(operation_id)
            if op is None:
                raise OperationNotFound(operation_id)
            return copy.deepcopy(op)

    def compare_and_transition(
        self,
        operation_id: str,
        expected: OperationStatus,
        new_status: OperationStatus,
        updates: dict[str, Any],
    ) -> bool:
        unknown = set(updates) - _OPERATION_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        with self._lock:
            op = self._operations.get(operation_id)
            if op is None:
                raise OperationNotFound(operation_id)
            if op.status != expected:
                return False
            for key, value in updates.items():
                setattr(op, key, copy.deepcopy(value))
            op.status = new_status
            op.updated_at = utc_now_iso()
            return True

    def mark_settled(self, operation_id: str) -> None:
        with self._lock:
            op = self._operations.get(operation_id)
            if op is None:
                raise OperationNotFound(operation_id)
            if op.settled_at is None:
                op.settled_at = utc_now_iso()

    def _snapshot(self) -> list[UsageOperation]:
        with self._lock:
            return [copy.deepcopy(op) for op in self._operations.values()]

    def list_operations(
        self,
        user_id: str,
        *,
        feature: str | None = None,
        status: OperationStatus | None = None,
        limit: int = 50,
    ) -> list[UsageOperation]:
        ops = [
            op
            for op in self._snapshot()
            if op.user_id == user_id
            and (feature is None or op.feature == feature)
            and (status is None or op.status == status)
        ]
        ops.sort(key=lambda op: op.created_at, reverse=True)
        return ops[:limit]

    def list_pending(self, older_than: str, limit: int = 500) -> list[UsageOperation]:
        ops = [
            op for op in self._snapshot()
            if op.status == OperationStatus.PENDING and op.created_at < older_than
        ]
        ops.sort(key=lambda op: op.created_at)
        return ops[:limit]

    def list_unsettled(self, older_than: str, limit: int = 500) -> list[UsageOperation]:
        ops = [
            op for op in self._snapshot()
            if op.status in TERMINAL_STATUSES and op.settled_at is None and op.updated_at < older_than
        ]
        ops.sort(key=lambda op: op.updated_at)
        return ops[:limit]

    def existing_ids(self, operation_ids: Iterable[str]) -> set[str]:
        with self._lock:
            return {op_id for op_id in operation_ids if op_id in self._operations}

    def usage_stats(self, since: str) -> UsageStats:
        ops = [op for op in self._snapshot() if op.created_at >= since]
        return UsageStats(
            total_operations=len(ops),
            pending_operations=sum(1 for op in ops if op.status == OperationStatus.PENDING),
            failed_operations=sum(1 for op in ops if op.status == OperationStatus.FAILED),
            credits_consumed=sum(op.cost or 0 for op in ops if op.status == OperationStatus.SUCCESS),
        )
