"""
dopaya.api.routes.donations — Impact preview & donate-now endpoints
=====================================================================
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response
from pydantic import BaseModel, Field

from dopaya.api.deps import get_config, get_current_user, get_store
from dopaya.config import DopayaConfig
from dopaya.database.models import DonationSource
from dopaya.engine.impact import ImpactConfigError
from dopaya.services.donation_service import (
    DonationOutcome,
    DonationRequest,
    InvalidDonation,
    ProjectNotFound,
    complete_donation,
    preview_impact,
)
from dopaya.services.store import PointsStore, StoreError

router = APIRouter(tags=["donations"])


class DonateBody(BaseModel):
    amount: float = Field(gt=0)
    tip_amount: float = Field(default=0.0, ge=0)


def _outcome_dict(outcome: DonationOutcome) -> dict:
    d = outcome.donation
    return {
        "id": d.id,
        "user_id": d.user_id,
        "project_id": d.project_id,
        "amount": d.amount,
        "tip_amount": d.tip_amount,
        "impact_points": d.impact_points,
        "status": d.status,
        "calculated_impact": d.calculated_impact,
        "generated_text_past_en": d.generated_text_past_en,
        "generated_text_past_de": d.generated_text_past_de,
        "points_applied": outcome.points_applied,
        "new_balance": outcome.ledger.new_balance if outcome.ledger else None,
        "replayed": outcome.was_duplicate,
    }


@router.get("/projects/{project_id}/impact-preview")
def impact_preview(
    project_id: int,
    store: Annotated[PointsStore, Depends(get_store)],
    cfg: Annotated[DopayaConfig, Depends(get_config)],
    amount: float = Query(..., gt=0),
    lang: str = Query("en"),
):
    """Call-to-action text and points for a prospective donation."""
    if lang not in cfg.supported_languages:
        raise HTTPException(400, f"Unsupported language {lang!r}")
    try:
        return preview_impact(
            store, project_id, amount, lang,
            default_multiplier=cfg.default_points_multiplier,
        )
    except ProjectNotFound:
        raise HTTPException(404, "Project not found")
    except ImpactConfigError as exc:
        raise HTTPException(422, str(exc))
    except StoreError:
        raise HTTPException(503, "Database is currently unavailable")


@router.post("/projects/{project_id}/donate", status_code=201)
def donate(
    project_id: int,
    body: DonateBody,
    response: Response,
    user_id: Annotated[int, Depends(get_current_user)],
    store: Annotated[PointsStore, Depends(get_store)],
    cfg: Annotated[DopayaConfig, Depends(get_config)],
    idempotency_key: Annotated[str | None, Header()] = None,
):
    """Record a donation paid in-session and credit its Impact Points.

    The ``Idempotency-Key`` header makes a double click return the first
    donation instead of creating a second one.
    """
    if not idempotency_key or not idempotency_key.strip():
        raise HTTPException(400, "Idempotency-Key header is required")

    try:
        outcome = complete_donation(
            store,
            DonationRequest(
                user_id=user_id,
                project_id=project_id,
                amount=body.amount,
                source=DonationSource.DONATE_NOW,
                payment_reference=f"donate:{user_id}:{idempotency_key.strip()}",
                tip_amount=body.tip_amount,
            ),
            default_multiplier=cfg.default_points_multiplier,
            languages=cfg.supported_languages,
        )
    except ProjectNotFound:
        raise HTTPException(404, "Project not found")
    except InvalidDonation as exc:
        raise HTTPException(400, str(exc))
    except StoreError:
        raise HTTPException(503, "Database is currently unavailable")

    if outcome.was_duplicate:
        response.status_code = 200
    return _outcome_dict(outcome)
