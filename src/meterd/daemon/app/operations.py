"""Operation-facing endpoints: start, finalize, and per-user reads."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from ..ledger.models import OperationStatus
from ..services import get_services
from .common import to_http_error

router = APIRouter(prefix="/v1", tags=["operations"])


class StartRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=200)
    feature: str = Field(..., min_length=1, max_length=120)
    estimate: int | None = Field(default=None, ge=0)
    metadata: dict[str, Any] | None = None


class FinalizeRequest(BaseModel):
    actual_cost: int = Field(default=0, ge=0)
    is_refund: bool = False
    result: Any = None
    error_message: str | None = Field(default=None, max_length=2000)


def _start(body: StartRequest) -> dict:
    services = get_services()
    estimate = body.estimate
    if estimate is None:
        estimate = services.config.estimate_for(body.feature)
        if estimate is None:
            raise ValueError(f"No estimate given and no price configured for feature {body.feature!r}")
    operation_id = services.ledger.start(body.user_id, body.feature, estimate, body.metadata)
    return {
        "operation_id": operation_id,
        "estimate": estimate,
        "balance": services.ledger.balance(body.user_id),
    }


@router.post("/operations", status_code=201)
async def start_operation(body: StartRequest):
    try:
        return await run_in_threadpool(_start, body)
    except Exception as exc:
        raise to_http_error(exc) from exc


def _finalize(operation_id: str, body: FinalizeRequest) -> dict:
    ledger = get_services().ledger
    applied = ledger.finalize(
        operation_id,
        actual_cost=body.actual_cost,
        is_refund=body.is_refund,
        result=body.result,
        error_message=body.error_message,
    )
    operation = ledger.get_operation(operation_id)
    return {"applied": applied, "operation": operation.to_dict()}


@router.post("/operations/{operation_id}/finalize")
async def finalize_operation(operation_id: str, body: FinalizeRequest):
    try:
        return await run_in_threadpool(_finalize, operation_id, body)
    except Exception as exc:
        raise to_http_error(exc) from exc


@router.get("/operations/{operation_id}")
async def get_operation(operation_id: str):
    try:
        operation = await run_in_threadpool(get_services().ledger.get_operation, operation_id)
    except Exception as exc:
        raise to_http_error(exc) from exc
    return operation.to_dict()


@router.get("/users/{user_id}/balance")
async def get_balance(user_id: str):
    try:
        credits = await run_in_threadpool(get_services().ledger.balance, user_id)
    except Exception as exc:
        raise to_http_error(exc) from exc
    return {"user_id": user_id, "credits": credits}


@router.get("/users/{user_id}/operations")
async def list_user_operations(
    user_id: str,
    feature: str | None = Query(default=None),
    status: OperationStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
):
    operations = get_services().ledger.operations
    try:
        rows = await run_in_threadpool(
            lambda: operations.list_operations(user_id, feature=feature, status=status, limit=limit)
        )
    except Exception as exc:
        raise to_http_error(exc) from exc
    return {"user_id": user_id, "operations": [op.to_dict() for op in rows]}


@router.get("/users/{user_id}/entries")
async def list_user_entries(
    user_id: str,
    reason: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
):
    balances = get_services().ledger.balances
    try:
        entries = await run_in_threadpool(lambda: balances.list_entries(user_id, reason=reason, limit=limit))
    except Exception as exc:
        raise to_http_error(exc) from exc
    return {"user_id": user_id, "entries": [entry.to_dict() for entry in entries]}
