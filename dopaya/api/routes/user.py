"""
dopaya.api.routes.user — Donor balance, ledger history & rewards
==================================================================
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from dopaya.api.deps import get_config, get_current_user, get_store
from dopaya.config import DopayaConfig
from dopaya.services.donation_service import user_impact_summary
from dopaya.services.ledger_service import InsufficientPoints, LedgerError
from dopaya.services.reward_service import RewardNotFound, apply_welcome_bonus, redeem_reward
from dopaya.services.store import PointsStore, RowNotFound, StoreError, row_to_dict

router = APIRouter(tags=["user"])


@router.get("/user/impact")
def get_impact(
    user_id: Annotated[int, Depends(get_current_user)],
    store: Annotated[PointsStore, Depends(get_store)],
):
    try:
        return user_impact_summary(store, user_id)
    except RowNotFound:
        raise HTTPException(404, "User not found")
    except StoreError:
        raise HTTPException(503, "Database is currently unavailable")


@router.get("/user/transactions")
def list_transactions(
    user_id: Annotated[int, Depends(get_current_user)],
    store: Annotated[PointsStore, Depends(get_store)],
    limit: int = Query(50, ge=1, le=500),
):
    """Most recent ledger entries first."""
    try:
        entries = store.list_entries(user_id, limit=limit)
    except StoreError:
        raise HTTPException(503, "Database is currently unavailable")
    return {"entries": [row_to_dict(e) for e in entries], "total": len(entries)}


@router.post("/user/welcome-bonus")
def welcome_bonus(
    user_id: Annotated[int, Depends(get_current_user)],
    store: Annotated[PointsStore, Depends(get_store)],
    cfg: Annotated[DopayaConfig, Depends(get_config)],
):
    try:
        result, already = apply_welcome_bonus(store, user_id, cfg.welcome_bonus_points)
    except LedgerError as exc:
        raise HTTPException(503, f"Welcome bonus not applied: {exc.step}")
    if already:
        return {"message": "Welcome bonus already applied", "applied": False}
    return {
        "message": "Welcome bonus applied",
        "applied": True,
        "points": result.points,
        "new_balance": result.new_balance,
    }


@router.post("/rewards/{reward_id}/redeem", status_code=201)
def redeem(
    reward_id: int,
    user_id: Annotated[int, Depends(get_current_user)],
    store: Annotated[PointsStore, Depends(get_store)],
):
    try:
        redemption, result = redeem_reward(store, user_id, reward_id)
    except RewardNotFound:
        raise HTTPException(404, "Reward not found")
    except InsufficientPoints:
        raise HTTPException(400, "Insufficient impact points")
    except RowNotFound:
        raise HTTPException(404, "User not found")
    except (LedgerError, StoreError):
        raise HTTPException(503, "Redemption could not be completed")
    return {
        **row_to_dict(redemption),
        "new_balance": result.new_balance,
    }
