"""Helpers shared by the HTTP routers."""

from __future__ import annotations

import os
import secrets

from fastapi import HTTPException, Request

from ..errors import InsufficientCredits, JobNotFound, LedgerError, OperationNotFound, TransactionConflict
from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)


def to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, InsufficientCredits):
        return HTTPException(
            status_code=402,
            detail={
                "error": "insufficient_credits",
                "message": str(exc),
                "required": exc.required,
                "available": exc.available,
            },
        )
    if isinstance(exc, (OperationNotFound, JobNotFound)):
        logger.warning("Unknown id requested", error=str(exc))
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TransactionConflict):
        logger.error("Store contention persisted after retries", error=str(exc))
        return HTTPException(status_code=503, detail="Ledger busy, retry later")
    if isinstance(exc, ValueError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, LedgerError):
        return HTTPException(status_code=409, detail=str(exc))
    logger.error("Unhandled ledger failure", error=str(exc), error_type=type(exc).__name__)
    return HTTPException(status_code=500, detail="Internal ledger error")


def require_admin_token(request: Request) -> None:
    expected = (os.getenv("METERD_ADMIN_TOKEN") or "").strip()
    if not expected:
        return
    provided = (request.headers.get("x-meterd-admin-token") or "").strip()
    if not provided or not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=403, detail="Admin token is required")
