"""meterd daemon application package.

Creates the FastAPI app, registers routers, and wires up lifecycle events.
Re-exports `app` so uvicorn can serve ``meterd.daemon.app:app``.
"""

import os
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from meterd import __version__
from ..utils.logging_config import setup_logging

load_dotenv()
setup_logging(os.getenv("METERD_LOG_LEVEL", "INFO"))

app = FastAPI(title="meterd", version=__version__)


def _split_csv_env(name: str) -> list[str]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


cors_origins = _split_csv_env("METERD_CORS_ORIGINS")
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials="*" not in cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# --- Lifecycle ---
from .lifecycle import startup_event, shutdown_event


@app.on_event("startup")
async def _startup():
    await startup_event(app)


@app.on_event("shutdown")
async def _shutdown():
    await shutdown_event()


# --- Routers ---
from .admin import router as admin_router
from .operations import router as operations_router

app.include_router(admin_router)
app.include_router(operations_router)

__all__ = ["app"]
