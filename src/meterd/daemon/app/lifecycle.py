"""meterd daemon lifecycle: startup checks, recovery sweep, background driver loop."""

import asyncio
import os
import time

from ..db import check_db_integrity, init_db
from ..runtime.recovery import reconcile
from ..services import get_services
from ..utils.config_loader import config_loader
from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

_loop_task: asyncio.Task | None = None


async def startup_event(app):
    """Called on FastAPI startup."""
    global _loop_task
    strict_startup = (os.getenv("METERD_STARTUP_STRICT", "0").strip() == "1")
    init_timeout_sec = max(5, int(os.getenv("METERD_STARTUP_INIT_TIMEOUT_SECONDS", "30")))

    try:
        config_loader.load_config()
    except Exception as exc:
        logger.error("Config load failed on startup", error=str(exc), strict=strict_startup)
        if strict_startup:
            os._exit(1)

    services = get_services()

    try:
        await asyncio.wait_for(asyncio.to_thread(init_db, services.dsn), timeout=init_timeout_sec)
    except Exception as exc:
        logger.error("Startup database init failed", error=str(exc), strict=strict_startup)
        if strict_startup:
            os._exit(1)

    try:
        ok = await asyncio.wait_for(asyncio.to_thread(check_db_integrity, services.dsn), timeout=init_timeout_sec)
        if not ok:
            logger.error("Startup database integrity failed", strict=strict_startup)
            if strict_startup:
                os._exit(1)
    except Exception as exc:
        logger.error("Startup database integrity error", error=str(exc), strict=strict_startup)
        if strict_startup:
            os._exit(1)

    try:
        logger.info("Running reconciliation sweep...")
        summary = await asyncio.wait_for(
            asyncio.to_thread(reconcile, services.ledger, services.jobs, services.config.recovery),
            timeout=init_timeout_sec,
        )
        logger.info("Reconciliation summary", **summary)
    except Exception as exc:
        logger.error("Startup reconciliation sweep failed", error=str(exc), strict=strict_startup)
        if strict_startup:
            os._exit(1)

    _loop_task = asyncio.create_task(driver_loop())


async def shutdown_event():
    """Called on FastAPI shutdown."""
    global _loop_task
    if _loop_task is not None:
        _loop_task.cancel()
        try:
            await _loop_task
        except asyncio.CancelledError:
            pass
        _loop_task = None


async def driver_loop():
    logger.info("Driver loop started")
    last_sweep = time.monotonic()
    while True:
        services = get_services()
        try:
            summary = await asyncio.to_thread(services.driver.run_cycle)
            if any(summary.values()):
                logger.info("Driver cycle applied", **summary)

            now = time.monotonic()
            if (now - last_sweep) >= services.config.recovery.sweep_interval_seconds:
                await asyncio.to_thread(
                    reconcile, services.ledger, services.jobs, services.config.recovery
                )
                last_sweep = now
            await asyncio.sleep(services.config.driver.poll_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Driver loop stopped")
            raise
        except Exception as e:
            logger.error("Driver loop error", error=str(e))
            await asyncio.sleep(5)
