"""
dopaya.api.main — FastAPI application entry point
===================================================

Run with::

    uvicorn dopaya.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from dopaya.api.deps import get_config, get_engine  # noqa: E402
from dopaya.api.routes.admin import router as admin_router  # noqa: E402
from dopaya.api.routes.donations import router as donations_router  # noqa: E402
from dopaya.api.routes.user import router as user_router  # noqa: E402
from dopaya.api.routes.webhooks import router as webhooks_router  # noqa: E402
from dopaya.api.tasks import ReconcileLoop  # noqa: E402
from dopaya.services.log_buffer import install_handler  # noqa: E402
from dopaya.services.store import PointsStore  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine, start reconciliation."""
    # Uvicorn reconfigures logging on startup, so attach after it has run
    install_handler()

    engine = get_engine()
    cfg = get_config()
    reconciler = ReconcileLoop(PointsStore.from_config(engine, cfg), cfg)
    reconciler.start()
    logger.info("Dopaya API started — engine ready (%s)", engine.url.database)
    yield
    reconciler.stop()
    logger.info("Dopaya API shutting down")


app = FastAPI(
    title="Dopaya Impact API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(donations_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")
app.include_router(user_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
