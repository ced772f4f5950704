"""
meterd invariant layer: balance and lifecycle verification.

All checks are deterministic read-only queries. No mutations. No side effects.
"""

from dataclasses import dataclass
from typing import Optional

from ..ledger.models import iso_seconds_ago


@dataclass
class InvariantResult:
    name: str
    passed: bool
    detail: Optional[str] = None


def _result(name: str, violations: list[str], label: str) -> InvariantResult:
    if violations:
        shown = "; ".join(violations[:10])
        more = f" (+{len(violations) - 10} more)" if len(violations) > 10 else ""
        return InvariantResult(name=name, passed=False, detail=f"{label}: {shown}{more}")
    return InvariantResult(name=name, passed=True)


def check_no_negative_balances(conn) -> InvariantResult:
    """credits >= 0 for every user."""
    rows = conn.execute("SELECT user_id, credits FROM credit_balances WHERE credits < 0").fetchall()
    return _result(
        "no_negative_balances",
        [f"{r['user_id']}: credits={r['credits']}" for r in rows],
        "Violations",
    )


def check_balances_match_journal(conn) -> InvariantResult:
    """Each balance equals the sum of its journal deltas."""
    journal = conn.execute(
        "SELECT user_id, SUM(delta) AS total FROM credit_ledger GROUP BY user_id"
    ).fetchall()
    totals = {r["user_id"]: int(r["total"] or 0) for r in journal}
    balances = conn.execute("SELECT user_id, credits FROM credit_balances").fetchall()
    live = {r["user_id"]: int(r["credits"]) for r in balances}

    mismatches = []
    for user_id in sorted(set(totals) | set(live)):
        if totals.get(user_id, 0) != live.get(user_id, 0):
            mismatches.append(f"{user_id}: credits={live.get(user_id, 0)}, journal_sum={totals.get(user_id, 0)}")
    return _result("balances_match_journal", mismatches, "Mismatches")


def check_no_stale_unsettled(conn, grace_seconds: int = 300) -> InvariantResult:
    """Terminal operations have their settlement recorded within the grace window."""
    rows = conn.execute(
        """
        SELECT operation_id, status, updated_at FROM usage_operations
        WHERE status IN ('success', 'failed') AND settled_at IS NULL AND updated_at < ?
        """,
        (iso_seconds_ago(grace_seconds),),
    ).fetchall()
    return _result(
        "no_stale_unsettled",
        [f"{r['operation_id']} ({r['status']} since {r['updated_at']})" for r in rows],
        "Unsettled",
    )


def check_pending_have_reservations(conn) -> InvariantResult:
    """Every pending operation with a non-zero estimate has a matching reserve entry."""
    rows = conn.execute(
        """
        SELECT o.operation_id, o.estimate
        FROM usage_operations o
        LEFT JOIN credit_ledger l ON l.operation_id = o.operation_id AND l.reason = 'reserve'
        WHERE o.status = 'pending' AND o.estimate > 0 AND l.entry_id IS NULL
        """
    ).fetchall()
    return _result(
        "pending_have_reservations",
        [f"{r['operation_id']}: estimate={r['estimate']}" for r in rows],
        "Missing reservation",
    )


def check_failed_operations_refunded(conn) -> InvariantResult:
    """Failed operations carry cost = 0 and refund = true."""
    rows = conn.execute(
        """
        SELECT operation_id, cost, refund FROM usage_operations
        WHERE status = 'failed' AND (cost IS NULL OR cost != 0 OR refund = 0)
        """
    ).fetchall()
    return _result(
        "failed_operations_refunded",
        [f"{r['operation_id']}: cost={r['cost']}, refund={r['refund']}" for r in rows],
        "Violations",
    )


def run_all_checks(conn, grace_seconds: int = 300) -> list[InvariantResult]:
    """Run all invariant checks and return results."""
    return [
        check_no_negative_balances(conn),
        check_balances_match_journal(conn),
        check_no_stale_unsettled(conn, grace_seconds),
        check_pending_have_reservations(conn),
        check_failed_operations_refunded(conn),
    ]
