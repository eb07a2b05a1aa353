"""
dopaya.services.payment_events — Payment-Confirmed Event Trigger
=================================================================

The payment provider delivers ``payment_intent.succeeded`` at least once.
Each delivery goes through :func:`process_payment_event`:

    1. Record the event id (``payment_events`` primary key) before any
       side effect.  A second delivery finds the row instead.
    2. Skip events already ``processed`` or ``ignored``; re-run events left
       ``processing`` or ``failed``.  Re-running is safe because the
       donation (``payment_reference``) and the ledger intent
       (``donation:{id}``) are unique further down.
    3. Validate the string-typed metadata with :class:`PaymentMetadata`.
    4. Hand off to :func:`~dopaya.services.donation_service.complete_donation`.

Bad metadata can never succeed on redelivery, so it marks the event
``ignored``.  A store outage propagates as :class:`StoreError` so the HTTP
layer answers 503 and the provider tries again.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from dopaya.constants import DEFAULT_POINTS_MULTIPLIER, SUPPORTED_LANGUAGES
from dopaya.database.models import DonationSource, PaymentEventStatus
from dopaya.services.donation_service import (
    DonationError,
    DonationOutcome,
    DonationRequest,
    complete_donation,
)
from dopaya.services.store import StoreError

if TYPE_CHECKING:
    from dopaya.services.store import PointsStore

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------
class PaymentMetadata(BaseModel):
    """Metadata attached to the payment intent at checkout (all strings)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    # Numeric users.id or the identity provider's UUID
    user_id: str = Field(alias="userId", min_length=1)
    project_id: int = Field(alias="projectId", gt=0)
    support_amount: float = Field(alias="supportAmount", gt=0)
    tip_amount: float | None = Field(default=None, alias="tipAmount", ge=0)
    impact_points: float | None = Field(default=None, alias="impactPoints", ge=0)

    @field_validator("tip_amount", "impact_points", mode="before")
    @classmethod
    def _blank_is_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("user_id", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value.strip() if isinstance(value, str) else value


@dataclass(frozen=True, slots=True)
class EventResult:
    event_id: str
    status: str
    donation: DonationOutcome | None = None
    was_duplicate: bool = False
    reason: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _set_status(
    store: PointsStore, event_id: str, status: PaymentEventStatus, error: str | None = None,
) -> None:
    try:
        store.set_payment_event_status(event_id, status.value, error=error)
    except StoreError:
        logger.exception("Could not mark payment event %s %s", event_id, status.value)


def _resolve_user_id(store: PointsStore, raw: str) -> int | None:
    """Numeric id as-is (if the user exists), otherwise look up the auth UUID."""
    if raw.isdigit():
        user_id = int(raw)
        return user_id if store.user_exists(user_id) else None
    return store.find_user_id_by_auth_id(raw)


def _ignore(store: PointsStore, event_id: str, reason: str) -> EventResult:
    logger.warning("Payment event %s ignored: %s", event_id, reason)
    _set_status(store, event_id, PaymentEventStatus.IGNORED, reason)
    return EventResult(event_id=event_id, status=PaymentEventStatus.IGNORED.value, reason=reason)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def process_payment_event(
    store: PointsStore,
    event_id: str,
    event_type: str,
    payment_reference: str | None,
    metadata: Mapping[str, Any] | None,
    *,
    default_multiplier: float = DEFAULT_POINTS_MULTIPLIER,
    languages: tuple[str, ...] = SUPPORTED_LANGUAGES,
) -> EventResult:
    """Turn one provider delivery into (at most) one donation.

    Raises
    ------
    StoreError
        The store was unreachable; the event is left ``processing`` or
        ``failed`` and should be redelivered.
    """
    if event_type != PAYMENT_SUCCEEDED:
        logger.debug("Payment event %s (%s) not handled", event_id, event_type)
        return EventResult(event_id=event_id, status="unhandled")

    row, created = store.record_payment_event(event_id, event_type, payment_reference)
    if not created:
        if row.status in (PaymentEventStatus.PROCESSED.value, PaymentEventStatus.IGNORED.value):
            logger.info(
                "Payment event %s already %s (delivery #%d) — skipping",
                event_id, row.status, row.attempts,
            )
            return EventResult(event_id=event_id, status=row.status, was_duplicate=True)
        logger.info(
            "Payment event %s was left %s — re-running (delivery #%d)",
            event_id, row.status, row.attempts,
        )

    try:
        meta = PaymentMetadata.model_validate(dict(metadata or {}))
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        return _ignore(store, event_id, f"invalid metadata: {fields}")

    try:
        user_id = _resolve_user_id(store, meta.user_id)
        if user_id is None:
            return _ignore(store, event_id, f"unknown user {meta.user_id!r}")

        outcome = complete_donation(
            store,
            DonationRequest(
                user_id=user_id,
                project_id=meta.project_id,
                amount=meta.support_amount,
                source=DonationSource.PAYMENT_WEBHOOK,
                payment_reference=payment_reference or event_id,
                tip_amount=meta.tip_amount or 0.0,
                precomputed_points=meta.impact_points,
            ),
            default_multiplier=default_multiplier,
            languages=languages,
        )
    except DonationError as exc:
        return _ignore(store, event_id, str(exc))
    except StoreError as exc:
        logger.error("Payment event %s failed, awaiting redelivery: %s", event_id, exc)
        _set_status(store, event_id, PaymentEventStatus.FAILED, str(exc))
        raise

    _set_status(store, event_id, PaymentEventStatus.PROCESSED)
    return EventResult(
        event_id=event_id,
        status=PaymentEventStatus.PROCESSED.value,
        donation=outcome,
        was_duplicate=outcome.was_duplicate,
    )
