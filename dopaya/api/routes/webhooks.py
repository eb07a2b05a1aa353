"""
dopaya.api.routes.webhooks — Payment provider webhook
=======================================================

``POST /api/webhooks/stripe`` verifies the ``Stripe-Signature`` header with
the stripe SDK, then hands ``payment_intent.succeeded`` to
:func:`~dopaya.services.payment_events.process_payment_event`.

Status codes drive the provider's redelivery:
  * 200 — handled, duplicate, or permanently ignored (bad metadata)
  * 400 — bad signature / payload
  * 503 — store unavailable or webhook not configured; the provider retries
"""

from __future__ import annotations

import json
import logging
import os
from typing import Annotated

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request

from dopaya.api.deps import get_config, get_store
from dopaya.config import DopayaConfig
from dopaya.database.engine import run_db
from dopaya.services.payment_events import process_payment_event
from dopaya.services.store import PointsStore, StoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _verify(payload: bytes, signature: str | None, secret: str) -> dict:
    """Check the signature and return the decoded event."""
    text = payload.decode("utf-8")
    try:
        stripe.WebhookSignature.verify_header(text, signature or "", secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise HTTPException(400, "Invalid signature")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        raise HTTPException(400, "Invalid payload")


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    store: Annotated[PointsStore, Depends(get_store)],
    cfg: Annotated[DopayaConfig, Depends(get_config)],
    stripe_signature: Annotated[str | None, Header()] = None,
):
    secret = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not set — rejecting webhook")
        raise HTTPException(503, "Payment processing is currently unavailable")

    event = _verify(await request.body(), stripe_signature, secret)
    try:
        obj = event["data"]["object"]
        event_id = event["id"]
        event_type = event["type"]
    except (KeyError, TypeError):
        raise HTTPException(400, "Invalid payload")
    if not isinstance(obj, dict):
        raise HTTPException(400, "Invalid payload")

    try:
        result = await run_db(
            process_payment_event,
            store,
            event_id,
            event_type,
            obj.get("id"),
            obj.get("metadata"),
            default_multiplier=cfg.default_points_multiplier,
            languages=cfg.supported_languages,
        )
    except StoreError:
        raise HTTPException(503, "Database is currently unavailable")

    return {"received": True, "status": result.status, "duplicate": result.was_duplicate}
