"""Construction of the ledger, job queue and driver from DSN and config."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from .ledger.sql import SqlBalanceStore, SqlOperationStore, SqlStore
from .ledger.usage import Ledger
from .runtime.driver import RetryRefundDriver
from .runtime.jobs import JobStore, SqlJobStore
from .utils.config_loader import LedgerConfig, config_loader


@dataclass
class Services:
    dsn: str | None
    ledger: Ledger
    jobs: JobStore
    driver: RetryRefundDriver
    config: LedgerConfig


def build_services(dsn: str | None = None, config: LedgerConfig | None = None) -> Services:
    config = config or config_loader.get()
    ledger = Ledger(
        SqlBalanceStore(dsn, config.store),
        SqlOperationStore(dsn, config.store),
        config.settlement,
    )
    jobs = SqlJobStore(dsn, config.store)
    driver = RetryRefundDriver(ledger, jobs, settings=config.driver)
    return Services(dsn=dsn, ledger=ledger, jobs=jobs, driver=driver, config=config)


_services: Services | None = None
_services_lock = threading.Lock()


def get_services() -> Services:
    global _services
    with _services_lock:
        if _services is None:
            _services = build_services()
        return _services


def set_services(services: Services | None) -> None:
    """Replace the process-wide services; ``None`` rebuilds on next use."""
    global _services
    with _services_lock:
        _services = services


def apply_config(services: Services, config: LedgerConfig) -> None:
    """Swap reloaded settings into live services, keeping registered executors."""
    services.config = config
    services.ledger.settings = config.settlement
    services.driver.settings = config.driver
    for store in (services.ledger.balances, services.ledger.operations, services.jobs):
        if isinstance(store, SqlStore):
            store.settings = config.store
