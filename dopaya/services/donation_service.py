"""
dopaya.services.donation_service — Donation Recorder & Completion Pipeline
===========================================================================

Shared by both front doors that reach "payment confirmed": the synchronous
donate-now request and the asynchronous payment webhook.  Both call
:func:`complete_donation`, so a duplicate click and a redelivered webhook
are handled by the same code:

    1. Load + normalize the project
    2. Build the impact snapshot (best-effort; never blocks the donation)
    3. Insert the donation (``payment_reference`` is unique — a replay gets
       the existing row back)
    4. Bump project stats (new donations only)
    5. Apply Impact Points through the ledger, keyed ``donation:{id}``
    6. Donate-now: mark the donation ``completed``

Ledger failures are logged as operator alerts and never fail the donation;
money has already moved by the time we get here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from dopaya.constants import (
    CHANGEMAKER_THRESHOLD,
    DEFAULT_POINTS_MULTIPLIER,
    SUPPORTED_LANGUAGES,
)
from dopaya.database.models import (
    Donation,
    DonationSource,
    DonationStatus,
    TransactionType,
)
from dopaya.engine.impact import ConfigUnusable, ImpactConfig, ImpactConfigError
from dopaya.engine.mapper import normalize_project
from dopaya.engine.points import points_for_amount, raw_points, round_points
from dopaya.engine.snapshot import DonationImpact, build_donation_impact, build_snapshot
from dopaya.engine.text import format_amount
from dopaya.services.ledger_service import (
    LedgerAppendFailed,
    LedgerError,
    LedgerMeta,
    LedgerResult,
    apply_points,
    donation_key,
)
from dopaya.services.store import DuplicateKey, StoreError

if TYPE_CHECKING:
    from dopaya.services.store import PointsStore

logger = logging.getLogger(__name__)


class DonationError(Exception):
    """Base class for donation failures surfaced to the caller."""


class ProjectNotFound(DonationError, LookupError):
    pass


class InvalidDonation(DonationError, ValueError):
    pass


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DonationRequest:
    """A confirmed payment, as either front door sees it."""

    user_id: int
    project_id: int
    amount: float
    source: DonationSource
    payment_reference: str
    tip_amount: float = 0.0
    # Points already quoted to the donor (webhook metadata); used when > 0
    precomputed_points: float | None = None


@dataclass(frozen=True, slots=True)
class DonationOutcome:
    donation: Donation
    impact: DonationImpact | None
    ledger: LedgerResult | None
    ledger_error: str | None = None
    was_duplicate: bool = False

    @property
    def points_applied(self) -> bool:
        return self.ledger is not None and self.ledger_error is None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _load_config(
    store: PointsStore,
    project_id: int,
    default_multiplier: float,
) -> tuple[dict, ImpactConfig | None]:
    row = store.get_project_row(project_id)
    if row is None:
        raise ProjectNotFound(f"Project {project_id} not found")
    try:
        return row, normalize_project(row, default_multiplier)
    except ImpactConfigError as exc:
        logger.warning("Project %d has malformed impact config: %s", project_id, exc)
        return row, None


def _try_impact(
    config: ImpactConfig | None,
    amount: float,
    languages: tuple[str, ...],
    now: datetime,
) -> DonationImpact | None:
    """Snapshot for every language, or ``None`` — never raises."""
    if config is None:
        return None
    try:
        return build_donation_impact(config, amount, languages=languages, now=now)
    except ConfigUnusable as exc:
        logger.info("Donation proceeds without impact snapshot: %s", exc)
    except (ImpactConfigError, ValueError) as exc:
        logger.warning(
            "Impact snapshot failed for project %d (donation will proceed): %s",
            config.project_id, exc,
        )
    return None


def _points_delta(
    request: DonationRequest,
    config: ImpactConfig | None,
    default_multiplier: float,
) -> Decimal:
    """Unrounded points for the donation; the ledger floors it."""
    if request.precomputed_points and request.precomputed_points > 0:
        return Decimal(str(request.precomputed_points))
    multiplier = config.points_multiplier if config else default_multiplier
    return raw_points(request.amount, multiplier)


def _insert_or_fetch(
    store: PointsStore,
    request: DonationRequest,
    fields: dict,
) -> tuple[Donation, bool]:
    """Insert the donation; on a duplicate reference return the earlier row."""
    try:
        return store.insert_donation(**fields), False
    except DuplicateKey:
        existing = store.get_donation_by_reference(request.payment_reference)
        if existing is None:
            raise
        logger.info(
            "Donation for reference %s already recorded (id %d) — replay",
            request.payment_reference, existing.id,
        )
        return existing, True


def _apply_ledger(
    store: PointsStore,
    donation: Donation,
    delta: Decimal | int,
) -> tuple[LedgerResult | None, str | None]:
    meta = LedgerMeta(
        transaction_type=TransactionType.DONATION,
        project_id=donation.project_id,
        donation_id=donation.id,
        support_amount=donation.amount,
        description=(
            f"Support: ${format_amount(donation.amount)} for project {donation.project_id}"
        ),
    )
    try:
        result = apply_points(
            store, donation.user_id, delta, meta, idempotency_key=donation_key(donation.id),
        )
    except LedgerAppendFailed as exc:
        logger.error(
            "Points for donation %d not recorded (compensated=%s): %s",
            donation.id, exc.compensated, exc,
        )
        return None, str(exc)
    except LedgerError as exc:
        logger.error(
            "Points for donation %d not applied at step %s: %s",
            donation.id, exc.step, exc,
        )
        return None, str(exc)
    return result, None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def complete_donation(
    store: PointsStore,
    request: DonationRequest,
    *,
    default_multiplier: float = DEFAULT_POINTS_MULTIPLIER,
    languages: tuple[str, ...] = SUPPORTED_LANGUAGES,
    now: datetime | None = None,
) -> DonationOutcome:
    """Record a confirmed payment and credit its Impact Points.

    Raises
    ------
    InvalidDonation
        If the amount is not positive.
    ProjectNotFound
        If the project does not exist.
    StoreError
        If the project lookup or the donation insert fails.  Nothing has
        been written in that case, so the caller may retry.
    """
    if request.amount is None or request.amount <= 0:
        raise InvalidDonation(f"Invalid donation amount: {request.amount!r}")
    if request.tip_amount < 0:
        raise InvalidDonation(f"Invalid tip amount: {request.tip_amount!r}")

    now = now or datetime.now(UTC)
    _, config = _load_config(store, request.project_id, default_multiplier)
    impact = _try_impact(config, request.amount, languages, now)
    delta = _points_delta(request, config, default_multiplier)

    from_webhook = request.source == DonationSource.PAYMENT_WEBHOOK
    fields = {
        "user_id": request.user_id,
        "project_id": request.project_id,
        "amount": request.amount,
        "tip_amount": request.tip_amount,
        "impact_points": round_points(delta),
        "status": (DonationStatus.COMPLETED if from_webhook else DonationStatus.PENDING).value,
        "source": request.source.value,
        "payment_reference": request.payment_reference,
        "completed_at": now if from_webhook else None,
    }
    if impact is not None:
        fields.update(
            calculated_impact=impact.calculated_impact,
            impact_snapshot=impact.to_bundle(),
            generated_text_past_en=impact.past_text("en"),
            generated_text_past_de=impact.past_text("de"),
        )

    donation, was_duplicate = _insert_or_fetch(store, request, fields)

    if not was_duplicate:
        try:
            store.increment_project_stats(donation.project_id, donation.amount)
        except StoreError as exc:
            logger.error("Project stats not updated for donation %d: %s", donation.id, exc)
    else:
        # A replay credits what the first delivery recorded
        delta = donation.impact_points

    ledger, ledger_error = _apply_ledger(store, donation, delta)

    if donation.status == DonationStatus.PENDING.value:
        try:
            store.update_donation(
                donation.id, status=DonationStatus.COMPLETED.value, completed_at=now,
            )
            donation.status = DonationStatus.COMPLETED.value
            donation.completed_at = now
        except StoreError as exc:
            logger.error("Donation %d left pending: %s", donation.id, exc)

    logger.info(
        "Donation %d (%s, user %d, project %d, $%s) %s",
        donation.id, request.source.value, donation.user_id, donation.project_id,
        format_amount(donation.amount), "replayed" if was_duplicate else "recorded",
    )
    return DonationOutcome(
        donation=donation,
        impact=impact,
        ledger=ledger,
        ledger_error=ledger_error,
        was_duplicate=was_duplicate,
    )


def preview_impact(
    store: PointsStore,
    project_id: int,
    amount: float,
    language: str = "en",
    *,
    default_multiplier: float = DEFAULT_POINTS_MULTIPLIER,
) -> dict:
    """Call-to-action preview for the donation form.

    Raises
    ------
    InvalidDonation
        If the amount is not positive.
    ProjectNotFound
        If the project does not exist.
    ImpactConfigError
        If the project has no usable impact configuration.
    """
    if amount <= 0:
        raise InvalidDonation(f"Invalid donation amount: {amount!r}")
    row, config = _load_config(store, project_id, default_multiplier)
    if config is None:
        raise ImpactConfigError(f"Project {project_id} has malformed impact config")

    snapshot = build_snapshot(config, amount, language)
    return {
        "project_id": project_id,
        "amount": amount,
        "language": language,
        "impact_points": points_for_amount(amount, config.points_multiplier),
        **snapshot.to_dict(),
    }


def user_impact_summary(store: PointsStore, user_id: int) -> dict:
    """Dashboard totals: balance, amount donated, distinct projects, level."""
    points = store.get_balance(user_id)
    donations = store.list_donations(user_id, limit=10_000)
    amount_donated = sum(d.amount for d in donations)
    projects = {d.project_id for d in donations}
    level = "changemaker" if points >= CHANGEMAKER_THRESHOLD else "aspirer"
    return {
        "impact_points": points,
        "amount_donated": amount_donated,
        "projects_supported": len(projects),
        "user_level": level,
    }
