"""SQL-backed stores (SQLite or PostgreSQL).

Every mutation runs in its own short transaction on a single row; lock
contention is retried with backoff before TransactionConflict surfaces.
"""

from __future__ import annotations

import uuid
from typing import Any, Callable, Iterable, TypeVar

from ..db.connection import get_db_connection, is_unique_violation, transaction
from ..errors import DuplicateOperation, InsufficientCredits, OperationNotFound
from ..utils.config_loader import StoreSettings
from ..utils.logging_config import StructuredLogger
from ..utils.retry import retry_with_backoff
from .models import (
    CreditEntry,
    EntryType,
    OperationStatus,
    UsageOperation,
    UsageStats,
    dumps_or_none,
    utc_now_iso,
)
from .stores import BalanceStore, OperationStore

logger = StructuredLogger(__name__)

T = TypeVar("T")

_OPERATION_COLUMNS = (
    "operation_id, user_id, feature, status, estimate, cost, refund, metadata, result, "
    "error_message, created_at, updated_at, settled_at"
)


class SqlStore:
    """Connection and retry plumbing shared by the SQL stores."""

    def __init__(self, dsn: str | None = None, settings: StoreSettings | None = None):
        self.dsn = dsn
        self.settings = settings or StoreSettings()

    def _run(self, fn: Callable[[Any], T], label: str) -> T:
        with get_db_connection(self.dsn, busy_timeout=self.settings.sqlite_busy_timeout_seconds) as conn:
            return retry_with_backoff(
                lambda: fn(conn),
                attempts=self.settings.conflict_attempts,
                backoff=self.settings.conflict_backoff_seconds,
                label=label,
            )


class SqlBalanceStore(SqlStore, BalanceStore):
    def get_balance(self, user_id: str) -> int:
        def _read(conn) -> int:
            row = conn.execute("SELECT credits FROM credit_balances WHERE user_id = ?", (user_id,)).fetchone()
            return int(row["credits"]) if row else 0

        return self._run(_read, "balance.get")

    @staticmethod
    def _entry_exists(conn, operation_id: str | None, reason: str) -> bool:
        if operation_id is None:
            return False
        row = conn.execute(
            "SELECT 1 FROM credit_ledger WHERE operation_id = ? AND reason = ?",
            (operation_id, str(reason)),
        ).fetchone()
        if row is None:
            return False
        logger.info("Mutation already journaled", operation_id=operation_id, reason=str(reason))
        return True

    @staticmethod
    def _credit(conn, user_id: str, amount: int, now: str) -> int:
        conn.execute(
            """
            INSERT INTO credit_balances (user_id, credits, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                credits = credit_balances.credits + excluded.credits,
                updated_at = excluded.updated_at
            """,
            (user_id, amount, now, now),
        )
        row = conn.execute("SELECT credits FROM credit_balances WHERE user_id = ?", (user_id,)).fetchone()
        return int(row["credits"])

    @staticmethod
    def _debit(conn, user_id: str, amount: int, now: str) -> int:
        # The CHECK constraint is evaluated on an upsert's insert row, so debits
        # only ever touch the existing row locked by the caller.
        conn.execute(
            "UPDATE credit_balances SET credits = credits - ?, updated_at = ? WHERE user_id = ?",
            (amount, now, user_id),
        )
        row = conn.execute("SELECT credits FROM credit_balances WHERE user_id = ?", (user_id,)).fetchone()
        return int(row["credits"])

    @staticmethod
    def _journal(conn, *, user_id, entry_type, reason, delta, balance_after, operation_id, metadata, now) -> None:
        conn.execute(
            """
            INSERT INTO credit_ledger (
                entry_id, user_id, entry_type, reason, delta, balance_after,
                operation_id, metadata, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                uuid.uuid4().hex,
                user_id,
                str(entry_type),
                str(reason),
                delta,
                balance_after,
                operation_id,
                dumps_or_none(metadata),
                now,
            ),
        )

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

        def _decrement(conn) -> int:
            with transaction(conn):
                now = utc_now_iso()
                if self._entry_exists(conn, operation_id, reason):
                    return 0
                row = conn.execute(
                    "SELECT credits FROM credit_balances WHERE user_id = ? FOR UPDATE",
                    (user_id,),
                ).fetchone()
                current = int(row["credits"]) if row else 0
                if current < amount and not allow_partial:
                    raise InsufficientCredits(user_id, amount, current)
                charged = min(amount, current)
                entry_metadata = metadata
                if charged < amount:
                    entry_metadata = {**(metadata or {}), "requested": amount, "shortfall": amount - charged}
                if charged:
                    balance_after = self._debit(conn, user_id, charged, now)
                else:
                    # Nothing to collect; the entry still records the shortfall.
                    balance_after = current
                self._journal(
                    conn,
                    user_id=user_id,
                    entry_type=entry_type,
                    reason=reason,
                    delta=-charged,
                    balance_after=balance_after,
                    operation_id=operation_id,
                    metadata=entry_metadata,
                    now=now,
                )
                return charged

        try:
            return self._run(_decrement, "balance.decrement")
        except Exception as exc:
            if is_unique_violation(exc):
                # A concurrent writer recorded the same (operation, reason) first.
                logger.info("Debit already journaled", user_id=user_id, operation_id=operation_id, reason=str(reason))
                return 0
            raise

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

        def _increment(conn) -> int:
            with transaction(conn):
                now = utc_now_iso()
                if self._entry_exists(conn, operation_id, reason):
                    return 0
                balance_after = self._credit(conn, user_id, amount, now)
                self._journal(
                    conn,
                    user_id=user_id,
                    entry_type=entry_type,
                    reason=reason,
                    delta=amount,
                    balance_after=balance_after,
                    operation_id=operation_id,
                    metadata=metadata,
                    now=now,
                )
                return amount

        try:
            return self._run(_increment, "balance.increment")
        except Exception as exc:
            if is_unique_violation(exc):
                logger.info("Credit already journaled", user_id=user_id, operation_id=operation_id, reason=str(reason))
                return 0
            raise

    def list_entries(
        self,
        user_id: str | None = None,
        *,
        reason: str | None = None,
        since: str | None = None,
        before: str | None = None,
        limit: int | None = None,
    ) -> list[CreditEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if reason is not None:
            clauses.append("reason = ?")
            params.append(str(reason))
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(since)
        if before is not None:
            clauses.append("created_at < ?")
            params.append(before)
        sql = "SELECT * FROM credit_ledger"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        def _list(conn) -> list[CreditEntry]:
            return [CreditEntry.from_row(row) for row in conn.execute(sql, tuple(params)).fetchall()]

        return self._run(_list, "balance.list_entries")


class SqlOperationStore(SqlStore, OperationStore):
    def create(self, operation: UsageOperation) -> str:
        def _create(conn) -> str:
            with transaction(conn):
                conn.execute(
                    f"INSERT INTO usage_operations ({_OPERATION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        operation.id,
                        operation.user_id,
                        operation.feature,
                        str(operation.status),
                        operation.estimate,
                        operation.cost,
                        int(operation.refund),
                        dumps_or_none(operation.metadata),
                        dumps_or_none(operation.result),
                        operation.error_message,
                        operation.created_at,
                        operation.updated_at,
                        operation.settled_at,
                    ),
                )
            return operation.id

        try:
            return self._run(_create, "operation.create")
        except Exception as exc:
            if is_unique_violation(exc):
                raise DuplicateOperation(operation.id) from exc
            raise

    @staticmethod
    def _fetch(conn, operation_id: str) -> UsageOperation:
        row = conn.execute(
            f"SELECT {_OPERATION_COLUMNS} FROM usage_operations WHERE operation_id = ?",
            (operation_id,),
        ).fetchone()
        if not row:
            raise OperationNotFound(operation_id)
        return UsageOperation.from_row(row)

    def get(self, operation_id: str) -> UsageOperation:
        return self._run(lambda conn: self._fetch(conn, operation_id), "operation.get")

    def compare_and_transition(
        self,
        operation_id: str,
        expected: OperationStatus,
        new_status: OperationStatus,
        updates: dict[str, Any],
    ) -> bool:
        columns = {
            "cost": lambda v: v,
            "refund": lambda v: int(bool(v)),
            "result": dumps_or_none,
            "error_message": lambda v: v,
        }
        unknown = set(updates) - set(columns)
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        assignments = ["status = ?", "updated_at = ?"]
        values: list[Any] = [str(new_status), utc_now_iso()]
        for key, value in updates.items():
            assignments.append(f"{key} = ?")
            values.append(columns[key](value))
        values.extend([operation_id, str(expected)])

        def _cas(conn) -> bool:
            with transaction(conn):
                cur = conn.execute(
                    f"UPDATE usage_operations SET {', '.join(assignments)} WHERE operation_id = ? AND status = ?",
                    tuple(values),
                )
                if cur.rowcount == 1:
                    return True
                # Distinguish "already moved on" from "never existed"
                self._fetch(conn, operation_id)
                return False

        return self._run(_cas, "operation.transition")

    def mark_settled(self, operation_id: str) -> None:
        def _mark(conn) -> None:
            with transaction(conn):
                cur = conn.execute(
                    "UPDATE usage_operations SET settled_at = ? WHERE operation_id = ? AND settled_at IS NULL",
                    (utc_now_iso(), operation_id),
                )
                if cur.rowcount == 0:
                    self._fetch(conn, operation_id)

        self._run(_mark, "operation.mark_settled")

    def _select(self, where: str, params: tuple, order: str, limit: int, label: str) -> list[UsageOperation]:
        sql = f"SELECT {_OPERATION_COLUMNS} FROM usage_operations WHERE {where} ORDER BY {order} LIMIT ?"

        def _list(conn) -> list[UsageOperation]:
            return [UsageOperation.from_row(row) for row in conn.execute(sql, params + (int(limit),)).fetchall()]

        return self._run(_list, label)

    def list_operations(
        self,
        user_id: str,
        *,
        feature: str | None = None,
        status: OperationStatus | None = None,
        limit: int = 50,
    ) -> list[UsageOperation]:
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if feature is not None:
            clauses.append("feature = ?")
            params.append(feature)
        if status is not None:
            clauses.append("status = ?")
            params.append(str(status))
        return self._select(" AND ".join(clauses), tuple(params), "created_at DESC", limit, "operation.list")

    def list_pending(self, older_than: str, limit: int = 500) -> list[UsageOperation]:
        return self._select(
            "status = 'pending' AND created_at < ?", (older_than,), "created_at ASC", limit, "operation.list_pending"
        )

    def list_unsettled(self, older_than: str, limit: int = 500) -> list[UsageOperation]:
        return self._select(
            "status IN ('success', 'failed') AND settled_at IS NULL AND updated_at < ?",
            (older_than,),
            "updated_at ASC",
            limit,
            "operation.list_unsettled",
        )

    def existing_ids(self, operation_ids: Iterable[str]) -> set[str]:
        ids = list(dict.fromkeys(operation_ids))
        if not ids:
            return set()

        def _existing(conn) -> set[str]:
            found: set[str] = set()
            for start in range(0, len(ids), 200):
                chunk = ids[start:start + 200]
                placeholders = ", ".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT operation_id FROM usage_operations WHERE operation_id IN ({placeholders})",
                    tuple(chunk),
                ).fetchall()
                found.update(row["operation_id"] for row in rows)
            return found

        return self._run(_existing, "operation.existing_ids")

    def usage_stats(self, since: str) -> UsageStats:
        def _stats(conn) -> UsageStats:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END), 0) AS pending,
                       COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0) AS failed,
                       COALESCE(SUM(CASE WHEN status = 'success' THEN cost ELSE 0 END), 0) AS consumed
                FROM usage_operations
                WHERE created_at >= ?
                """,
                (since,),
            ).fetchone()
            return UsageStats(
                total_operations=int(row["total"]),
                pending_operations=int(row["pending"]),
                failed_operations=int(row["failed"]),
                credits_consumed=int(row["consumed"]),
            )

        return self._run(_stats, "operation.usage_stats")
