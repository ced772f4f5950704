"""Database schema initialization for meterd."""

from ..utils.logging_config import StructuredLogger
from .connection import SQLITE, get_db_connection, get_db_path

logger = StructuredLogger(__name__)

# Plain SQL understood by both SQLite (>= 3.24) and PostgreSQL.
_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS credit_balances (
        user_id TEXT PRIMARY KEY,
        credits BIGINT NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (credits >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_ledger (
        entry_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        entry_type TEXT NOT NULL,
        reason TEXT NOT NULL,
        delta BIGINT NOT NULL,
        balance_after BIGINT NOT NULL,
        operation_id TEXT,
        metadata TEXT,
        created_at TEXT NOT NULL,
        CHECK (entry_type IN ('DEBIT', 'CREDIT', 'REFUND', 'ADJUST')),
        CHECK (balance_after >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_operations (
        operation_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        feature TEXT NOT NULL,
        status TEXT NOT NULL,
        estimate BIGINT NOT NULL,
        cost BIGINT,
        refund INTEGER NOT NULL DEFAULT 0,
        metadata TEXT,
        result TEXT,
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        settled_at TEXT,
        CHECK (status IN ('pending', 'success', 'failed')),
        CHECK (estimate >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_jobs (
        job_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        input TEXT,
        output TEXT,
        actual_cost BIGINT,
        operation_id TEXT NOT NULL,
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        finalized_at TEXT,
        CHECK (status IN ('pending', 'processing', 'success', 'failed', 'error'))
    )
    """,
]

_INDEXES = [
    # At most one mutation per (operation, reason): settlement retries are no-ops.
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_credit_ledger_operation_reason ON credit_ledger (operation_id, reason)",
    "CREATE INDEX IF NOT EXISTS ix_credit_ledger_user_created ON credit_ledger (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS ix_credit_ledger_reason_created ON credit_ledger (reason, created_at)",
    "CREATE INDEX IF NOT EXISTS ix_usage_operations_user_created ON usage_operations (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS ix_usage_operations_status_created ON usage_operations (status, created_at)",
    "CREATE INDEX IF NOT EXISTS ix_usage_jobs_status_created ON usage_jobs (status, created_at)",
    "CREATE INDEX IF NOT EXISTS ix_usage_jobs_status_finalized ON usage_jobs (status, finalized_at)",
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_usage_jobs_operation ON usage_jobs (operation_id)",
]

REQUIRED_TABLES = ("credit_balances", "credit_ledger", "usage_operations", "usage_jobs")


def init_db(dsn: str | None = None):
    """Initialize the database with the required schema. Safe to re-run."""
    logger.info("Initializing database", path=dsn or get_db_path())
    with get_db_connection(dsn) as conn:
        if conn.dialect == SQLITE:
            # WAL mode for concurrent readers alongside the single writer
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")

        conn.execute("BEGIN IMMEDIATE")
        try:
            for ddl in _TABLES:
                conn.execute(ddl)
            for ddl in _INDEXES:
                conn.execute(ddl)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    logger.info("Database initialized successfully")
