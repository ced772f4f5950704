"""Records owned by the ledger: usage operations and credit journal entries."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any


class OperationStatus(StrEnum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = {OperationStatus.SUCCESS, OperationStatus.FAILED}


class EntryType(StrEnum):
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"
    REFUND = "REFUND"
    ADJUST = "ADJUST"


class EntryReason(StrEnum):
    RESERVE = "reserve"
    SETTLE_REFUND = "settle_refund"
    SETTLE_EXTRA = "settle_extra"
    FAILURE_REFUND = "failure_refund"
    RECONCILE_ORPHAN = "reconcile_orphan"
    GRANT = "grant"
    ADMIN_ADJUST = "admin_adjust"


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def iso_seconds_ago(seconds: float) -> str:
    return (datetime.now(UTC) - timedelta(seconds=seconds)).isoformat(timespec="microseconds")


def dumps_or_none(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True, default=str)


def loads_or_none(text: str | None) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


@dataclass
class UsageOperation:
    """One metered unit of work.

    Created once in ``pending`` by ``Ledger.start`` and moved to a terminal
    status exactly once by ``Ledger.finalize``. Never deleted.
    """

    id: str
    user_id: str
    feature: str
    estimate: int
    status: OperationStatus = OperationStatus.PENDING
    cost: int | None = None
    refund: bool = False
    metadata: Any = None
    result: Any = None
    error_message: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    settled_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = str(self.status)
        return data

    @classmethod
    def from_row(cls, row) -> "UsageOperation":
        return cls(
            id=row["operation_id"],
            user_id=row["user_id"],
            feature=row["feature"],
            estimate=int(row["estimate"]),
            status=OperationStatus(row["status"]),
            cost=None if row["cost"] is None else int(row["cost"]),
            refund=bool(row["refund"]),
            metadata=loads_or_none(row["metadata"]),
            result=loads_or_none(row["result"]),
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            settled_at=row["settled_at"],
        )


@dataclass
class CreditEntry:
    """One balance mutation, written in the same transaction as the balance."""

    id: str
    user_id: str
    entry_type: EntryType
    reason: str
    delta: int
    balance_after: int
    operation_id: str | None = None
    metadata: Any = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["entry_type"] = str(self.entry_type)
        return data

    @classmethod
    def from_row(cls, row) -> "CreditEntry":
        return cls(
            id=row["entry_id"],
            user_id=row["user_id"],
            entry_type=EntryType(row["entry_type"]),
            reason=row["reason"],
            delta=int(row["delta"]),
            balance_after=int(row["balance_after"]),
            operation_id=row["operation_id"],
            metadata=loads_or_none(row["metadata"]),
            created_at=row["created_at"],
        )


@dataclass
class UsageStats:
    total_operations: int
    pending_operations: int
    failed_operations: int
    credits_consumed: int

    @property
    def error_rate(self) -> float:
        if self.total_operations == 0:
            return 0.0
        return self.failed_operations / self.total_operations

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["error_rate"] = round(self.error_rate, 4)
        return data
