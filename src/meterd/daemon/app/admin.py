"""Health and operator endpoints: adjustments, reconciliation, audit, stats."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from ... import __version__
from ..db import check_db_integrity, get_db_connection, get_db_path
from ..ledger.models import iso_seconds_ago
from ..runtime.recovery import reconcile
from ..services import apply_config, get_services
from ..utils.config_loader import config_loader
from ..utils.invariants import run_all_checks
from ..utils.logging_config import StructuredLogger
from .common import require_admin_token, to_http_error

logger = StructuredLogger(__name__)
router = APIRouter()


class AdjustRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=200)
    amount: int
    reason: str = Field(..., min_length=3, max_length=240)
    actor: str | None = Field(default=None, max_length=120)


def _integrity_summary() -> dict:
    services = get_services()
    try:
        ok = check_db_integrity(services.dsn)
    except Exception as exc:
        logger.error("Integrity check failed", error=str(exc))
        return {"ok": False, "error": str(exc)}
    return {"ok": ok}


@router.get("/health")
async def health():
    integrity = await run_in_threadpool(_integrity_summary)
    return {
        "status": "ok" if integrity["ok"] else "degraded",
        "version": __version__,
        "database": get_db_path(),
        "integrity": integrity,
    }


@router.post("/admin/credits/adjust")
async def adjust_credits(body: AdjustRequest, request: Request):
    require_admin_token(request)
    ledger = get_services().ledger
    try:
        balance = await run_in_threadpool(
            lambda: ledger.adjust(body.user_id, body.amount, body.reason, actor=body.actor)
        )
    except Exception as exc:
        raise to_http_error(exc) from exc
    return {"user_id": body.user_id, "credits": balance}


@router.post("/admin/reconcile")
async def reconcile_endpoint(request: Request):
    require_admin_token(request)
    services = get_services()
    try:
        summary = await run_in_threadpool(
            reconcile, services.ledger, services.jobs, services.config.recovery
        )
    except Exception as exc:
        raise to_http_error(exc) from exc
    return summary


def _audit() -> list[dict]:
    services = get_services()
    with get_db_connection(services.dsn) as conn:
        results = run_all_checks(conn, grace_seconds=services.config.recovery.orphan_grace_seconds)
    return [asdict(r) for r in results]


@router.get("/admin/audit")
async def audit_endpoint(request: Request):
    require_admin_token(request)
    checks = await run_in_threadpool(_audit)
    return {"passed": all(c["passed"] for c in checks), "checks": checks}


@router.get("/admin/stats")
async def stats_endpoint(request: Request, since_hours: float = Query(default=24.0, gt=0, le=24 * 366)):
    require_admin_token(request)
    operations = get_services().ledger.operations
    stats = await run_in_threadpool(operations.usage_stats, iso_seconds_ago(since_hours * 3600))
    return {"since_hours": since_hours, **stats.to_dict()}


@router.post("/admin/reload_config")
async def reload_config_endpoint(request: Request):
    require_admin_token(request)
    try:
        config = config_loader.load_config()
    except Exception as e:
        logger.error("Config reload failed", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
    apply_config(get_services(), config)
    return {"status": "ok", "message": "Configuration reloaded"}
