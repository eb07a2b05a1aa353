"""
dopaya.services.reconciliation_service — Ledger Intent Reconciliation
======================================================================

Periodic job that resolves ledger intents a crashed or failed
:func:`~dopaya.services.ledger_service.apply_points` call left behind, plus
a read-only audit of balances against the ledger.

How it works:
    1. ``pending`` intents older than the stale window never reached the
       balance (the increment stamps ``applied`` atomically), so they are
       marked ``abandoned``.  A replay of the same key may retry them.
    2. ``applied`` intents older than the window did move the balance.  If
       their ledger entry exists they are simply marked ``committed``;
       otherwise the entry is appended (roll forward) and then committed.
    3. :func:`audit_balances` compares ``users.impact_points`` with
       ``SUM(points_change)`` per user and reports drift.  It never writes:
       balances can legitimately carry adjustments made outside the ledger.

Rolling forward rather than compensating keeps the donor's points: the
money for them has already moved.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from dopaya.database.models import IntentStatus
from dopaya.services.store import DuplicateKey, StoreError

if TYPE_CHECKING:
    from dopaya.database.models import LedgerIntent
    from dopaya.services.store import PointsStore

logger = logging.getLogger(__name__)


def _roll_forward(store: PointsStore, intent: LedgerIntent) -> str:
    """Make sure *intent* has its ledger entry, then commit it."""
    action = "committed"
    if store.find_entry_for_intent(intent.id) is None:
        if intent.balance_after is None:
            # Should not happen: applied is always stamped with the balance
            logger.error("Applied intent %d has no balance_after — skipping", intent.id)
            return "skipped"
        try:
            store.append_entry(intent, intent.balance_after)
            action = "rolled_forward"
        except DuplicateKey:
            pass
    store.set_intent_status(intent.id, IntentStatus.COMMITTED, expected=IntentStatus.APPLIED)
    return action


def reconcile_intents(
    store: PointsStore,
    stale_after_seconds: int = 120,
    *,
    now: datetime | None = None,
    limit: int = 500,
) -> dict:
    """Resolve stale ``pending`` and ``applied`` intents.

    Returns ``{"checked": N, "abandoned": A, "committed": C,
    "rolled_forward": R, "errors": E, "actions": [...]}``.
    """
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(seconds=stale_after_seconds)
    actions: list[dict] = []
    counts = {"abandoned": 0, "committed": 0, "rolled_forward": 0, "errors": 0}

    for intent in store.list_intents(IntentStatus.PENDING, updated_before=cutoff, limit=limit):
        try:
            moved = store.set_intent_status(
                intent.id,
                IntentStatus.ABANDONED,
                expected=IntentStatus.PENDING,
                error="stale pending intent; balance never applied",
            )
        except StoreError:
            logger.exception("Could not abandon intent %d", intent.id)
            counts["errors"] += 1
            continue
        if moved:
            counts["abandoned"] += 1
            actions.append({"intent_id": intent.id, "key": intent.idempotency_key,
                            "action": "abandoned"})

    for intent in store.list_intents(IntentStatus.APPLIED, updated_before=cutoff, limit=limit):
        try:
            action = _roll_forward(store, intent)
        except StoreError:
            logger.exception("Could not roll intent %d forward", intent.id)
            counts["errors"] += 1
            continue
        if action in counts:
            counts[action] += 1
        actions.append({
            "intent_id": intent.id,
            "key": intent.idempotency_key,
            "user_id": intent.user_id,
            "points_change": intent.points_change,
            "action": action,
        })

    checked = len(actions) + counts["errors"]
    if counts["rolled_forward"] or counts["errors"]:
        logger.warning(
            "Intent reconciliation: %d rolled forward, %d committed, %d abandoned, "
            "%d errors: %s",
            counts["rolled_forward"], counts["committed"], counts["abandoned"],
            counts["errors"], actions,
        )
    elif actions:
        logger.info("Intent reconciliation: resolved %d stale intents", len(actions))
    else:
        logger.debug("Intent reconciliation: nothing stale")

    return {
        "checked": checked,
        **counts,
        "actions": actions,
        "timestamp": now.isoformat(),
    }


def audit_balances(store: PointsStore) -> dict:
    """Compare each balance with the sum of its ledger entries.

    Returns ``{"checked": N, "drifted": M, "drift": [...]}``.
    """
    balances = store.balances()
    totals = store.ledger_totals()

    drift: list[dict] = []
    for user_id, balance in balances.items():
        ledger_sum = totals.get(user_id, 0)
        if balance != ledger_sum:
            drift.append({
                "user_id": user_id,
                "balance": balance,
                "ledger_sum": ledger_sum,
                "diff": balance - ledger_sum,
            })

    if drift:
        logger.warning(
            "Balance audit: %d/%d balances differ from their ledger: %s",
            len(drift), len(balances), drift,
        )
    else:
        logger.info("Balance audit: all %d balances match", len(balances))

    return {
        "checked": len(balances),
        "drifted": len(drift),
        "drift": drift,
        "timestamp": datetime.now(UTC).isoformat(),
    }
