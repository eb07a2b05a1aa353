"""
dopaya.api.routes.admin — Operator endpoints (JWT‑protected)
=============================================================
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from dopaya.api.deps import get_config, get_current_admin, get_store
from dopaya.config import DopayaConfig
from dopaya.services.log_buffer import get_alerts
from dopaya.services.reconciliation_service import audit_balances, reconcile_intents
from dopaya.services.store import PointsStore, StoreError

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/reconcile")
def run_reconcile(
    store: Annotated[PointsStore, Depends(get_store)],
    cfg: Annotated[DopayaConfig, Depends(get_config)],
    admin: dict = Depends(get_current_admin),
    audit: bool = Query(False),
):
    """Resolve stale ledger intents now; optionally audit balances too."""
    try:
        result = {"intents": reconcile_intents(store, cfg.intent_stale_after_seconds)}
        if audit:
            result["audit"] = audit_balances(store)
    except StoreError:
        raise HTTPException(503, "Database is currently unavailable")
    return result


@router.get("/alerts")
def list_alerts(
    tail: int = Query(100, ge=1, le=1000),
    level: str | None = Query(None),
    logger_filter: str | None = Query(None, alias="logger"),
    admin: dict = Depends(get_current_admin),
):
    """Recent points-accounting warnings and errors from the alert buffer."""
    entries = get_alerts(tail=tail, level=level, logger_filter=logger_filter)
    return {"entries": entries, "total": len(entries)}
