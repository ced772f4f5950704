import sys
from pathlib import Path

import pytest

# Ensure src is on path for direct imports during testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from meterd.daemon.db import init_db  # noqa: E402
from meterd.daemon.ledger import (  # noqa: E402
    Ledger,
    MemoryBalanceStore,
    MemoryOperationStore,
    SqlBalanceStore,
    SqlOperationStore,
)
from meterd.daemon.utils.config_loader import SettlementSettings  # noqa: E402

FAST_SETTLEMENT = SettlementSettings(attempts=3, backoff_seconds=0.0)


@pytest.fixture
def memory_ledger():
    return Ledger(MemoryBalanceStore(), MemoryOperationStore(), FAST_SETTLEMENT)


@pytest.fixture
def sqlite_dsn(tmp_path, monkeypatch):
    dsn = f"sqlite:///{tmp_path / 'meterd.db'}"
    monkeypatch.setenv("METERD_DB_DSN", dsn)
    init_db(dsn)
    return dsn


@pytest.fixture
def sql_ledger(sqlite_dsn):
    return Ledger(SqlBalanceStore(sqlite_dsn), SqlOperationStore(sqlite_dsn), FAST_SETTLEMENT)


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request):
    """Runs a test once per storage backend."""
    if request.param == "memory":
        return request.getfixturevalue("memory_ledger")
    return request.getfixturevalue("sql_ledger")
