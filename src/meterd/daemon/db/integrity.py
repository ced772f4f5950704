"""Database integrity checks for schema + accounting invariants."""

from __future__ import annotations

from ..utils.invariants import run_all_checks
from .connection import SQLITE, get_db_connection
from .schema import REQUIRED_TABLES


def _table_names(conn) -> set[str]:
    if conn.dialect == SQLITE:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    else:
        rows = conn.execute(
            "SELECT table_name AS name FROM information_schema.tables WHERE table_schema = current_schema()"
        ).fetchall()
    return {row["name"] for row in rows}


def check_db_integrity(dsn: str | None = None) -> bool:
    """Run fast physical+logical checks used by daemon startup."""
    with get_db_connection(dsn) as conn:
        if conn.dialect == SQLITE:
            quick = conn.execute("PRAGMA quick_check").fetchone()[0]
            if str(quick).lower() != "ok":
                return False

        table_names = _table_names(conn)
        if any(name not in table_names for name in REQUIRED_TABLES):
            return False

        results = run_all_checks(conn)
        # Startup gate stays strict but bounded:
        # 1) non-negative balances, 2) balances agree with the journal.
        for result in results[:2]:
            if not result.passed:
                return False
    return True
