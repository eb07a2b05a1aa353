"""
dopaya.services.ledger_service — Impact Points Ledger
=======================================================

Every change to ``users.impact_points`` goes through :func:`apply_points`.
The balance update and the ledger append are separate store calls, so the
two are tied together by a persisted **ledger intent**:

    read balance → intent(pending) → atomic increment (intent → applied)
                 → append entry → intent(committed)

* The increment is ``balance + delta`` evaluated by the store, never a
  write-back of a value read earlier, so concurrent donations cannot lose
  an update.
* The intent's ``idempotency_key`` is unique: replaying the same donation,
  event or redemption returns the earlier outcome with ``was_duplicate``.
* If the append fails, the increment is reverted by an atomic decrement
  and the intent is marked ``compensated``.  If *that* fails too the intent
  stays ``applied`` and :mod:`dopaya.services.reconciliation_service`
  finishes the job later.

Rounding lives here as well: callers pass the unrounded delta and
:func:`~dopaya.engine.points.round_points` floors it once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from dopaya.database.models import IntentStatus, TransactionType
from dopaya.engine.points import round_points
from dopaya.services.store import (
    ConditionFailed,
    DuplicateKey,
    IntentNotPending,
    StoreError,
)

if TYPE_CHECKING:
    from dopaya.database.models import LedgerIntent
    from dopaya.services.store import PointsStore

logger = logging.getLogger(__name__)

# Terminal states that never touched the balance (or were reverted); a
# replay of the same key may claim the intent and try again.
RETRYABLE_INTENT_STATES = frozenset({
    IntentStatus.FAILED,
    IntentStatus.COMPENSATED,
    IntentStatus.ABANDONED,
})


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class LedgerError(Exception):
    """Base class; ``step`` names the protocol step that failed."""

    step = "ledger"

    def __init__(self, user_id: int, message: str) -> None:
        super().__init__(f"user {user_id}: {message}")
        self.user_id = user_id


class PointsReadFailed(LedgerError):
    """Step 1: the balance could not be read.  Nothing was mutated."""

    step = "read_balance"


class BalanceUpdateFailed(LedgerError):
    """Step 2: the increment failed.  No ledger entry was written."""

    step = "update_balance"


class InsufficientPoints(BalanceUpdateFailed):
    """A debit would take the balance below zero."""


class LedgerAppendFailed(LedgerError):
    """Step 3: the entry could not be appended.

    ``compensated`` tells whether the balance was reverted.  When False the
    intent is left ``applied`` for the reconciler.
    """

    step = "append_entry"

    def __init__(self, user_id: int, message: str, *, compensated: bool) -> None:
        super().__init__(user_id, message)
        self.compensated = compensated


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class LedgerMeta:
    """What the ledger entry should say about the mutation."""

    transaction_type: TransactionType
    project_id: int | None = None
    donation_id: int | None = None
    reward_id: int | None = None
    redemption_id: int | None = None
    support_amount: float | None = None
    description: str | None = None
    # Debits refuse to overdraw
    require_non_negative: bool = False


@dataclass(frozen=True, slots=True)
class LedgerResult:
    """Outcome of :func:`apply_points`."""

    new_balance: int | None
    points: int
    intent_id: int | None = None
    entry_id: int | None = None
    was_duplicate: bool = False


# ---------------------------------------------------------------------------
# Idempotency keys
# ---------------------------------------------------------------------------
def donation_key(donation_id: int) -> str:
    return f"donation:{donation_id}"


def welcome_bonus_key(user_id: int) -> str:
    return f"welcome_bonus:{user_id}"


def redemption_key(redemption_id: int) -> str:
    return f"redemption:{redemption_id}"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _mark(
    store: PointsStore,
    intent_id: int,
    status: IntentStatus,
    *,
    expected: IntentStatus,
    error: str | None = None,
) -> None:
    """Best-effort intent transition; a failure leaves it for the reconciler."""
    try:
        store.set_intent_status(intent_id, status, expected=expected, error=error)
    except StoreError:
        logger.exception(
            "Could not mark ledger intent %d %s — reconciler will resolve it",
            intent_id, status.value,
        )


def _duplicate_result(intent: LedgerIntent) -> LedgerResult:
    logger.info(
        "Ledger key %s already seen (intent %d, %s) — skipping",
        intent.idempotency_key, intent.id, intent.status,
    )
    return LedgerResult(
        new_balance=intent.balance_after,
        points=intent.points_change,
        intent_id=intent.id,
        was_duplicate=True,
    )


def _open_intent(
    store: PointsStore,
    user_id: int,
    points: int,
    meta: LedgerMeta,
    idempotency_key: str,
) -> LedgerIntent | LedgerResult:
    """Persist a pending intent, or report the earlier one for this key.

    Returns the intent when this call owns the mutation, otherwise the
    duplicate :class:`LedgerResult`.
    """
    try:
        intent = store.create_intent(
            idempotency_key=idempotency_key,
            user_id=user_id,
            transaction_type=meta.transaction_type.value,
            points_change=points,
            project_id=meta.project_id,
            donation_id=meta.donation_id,
            reward_id=meta.reward_id,
            redemption_id=meta.redemption_id,
            support_amount=meta.support_amount,
            description=meta.description,
        )
        return intent
    except DuplicateKey:
        pass
    except StoreError as exc:
        raise BalanceUpdateFailed(user_id, f"could not persist intent: {exc}") from exc

    try:
        existing = store.find_intent(idempotency_key)
    except StoreError as exc:
        raise PointsReadFailed(user_id, f"could not load intent {idempotency_key}: {exc}") from exc
    if existing is None:
        raise BalanceUpdateFailed(user_id, f"intent {idempotency_key} vanished")

    previous = IntentStatus(existing.status)
    if previous in RETRYABLE_INTENT_STATES:
        # Conditional claim: only one replay wins the retry
        try:
            claimed = store.set_intent_status(
                existing.id, IntentStatus.PENDING, expected=previous
            )
        except StoreError as exc:
            raise BalanceUpdateFailed(user_id, f"could not reclaim intent: {exc}") from exc
        if claimed:
            logger.info(
                "Retrying ledger intent %d (%s) — previously %s",
                existing.id, idempotency_key, previous.value,
            )
            return existing

    return _duplicate_result(existing)


def _compensate(store: PointsStore, intent: LedgerIntent, reason: str) -> bool:
    try:
        balance = store.revert_balance(intent.user_id, intent.points_change, intent.id, reason)
    except StoreError:
        logger.exception(
            "Compensation failed for intent %d (user %d, %+d points) — left applied",
            intent.id, intent.user_id, intent.points_change,
        )
        return False
    logger.warning(
        "Reverted %+d points for user %d (intent %d); balance now %d",
        intent.points_change, intent.user_id, intent.id, balance,
    )
    return True


def _superseded(store: PointsStore, intent: LedgerIntent, user_id: int) -> LedgerResult:
    """The intent left ``pending`` under us; the increment was rolled back.

    If another call has since claimed and applied it, report that outcome as
    a duplicate.  Otherwise (typically ``abandoned``) fail so the caller can
    replay the key.
    """
    try:
        current = store.find_intent(intent.idempotency_key)
    except StoreError as exc:
        raise BalanceUpdateFailed(user_id, f"could not reload intent: {exc}") from exc
    if current is not None and IntentStatus(current.status) in (
        IntentStatus.APPLIED, IntentStatus.COMMITTED,
    ):
        return _duplicate_result(current)
    status = current.status if current is not None else "missing"
    logger.warning(
        "Ledger intent %d (%s) became %s before its increment; balance untouched",
        intent.id, intent.idempotency_key, status,
    )
    raise BalanceUpdateFailed(user_id, f"intent {intent.idempotency_key} is {status}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def apply_points(
    store: PointsStore,
    user_id: int,
    delta: Decimal | float | int,
    meta: LedgerMeta,
    *,
    idempotency_key: str,
) -> LedgerResult:
    """Apply *delta* Impact Points to *user_id* and append the ledger entry.

    *delta* is unrounded; it is floored here before anything is written.
    A zero-point delta is a no-op that returns the current balance.

    Raises
    ------
    PointsReadFailed
        The balance (or an existing intent) could not be read.
    InsufficientPoints
        ``meta.require_non_negative`` and the debit would overdraw.
    BalanceUpdateFailed
        The intent or the increment could not be written.
    LedgerAppendFailed
        The entry could not be appended; see ``compensated``.
    """
    points = round_points(delta)

    # Step 1 — read
    try:
        balance = store.get_balance(user_id)
    except StoreError as exc:
        raise PointsReadFailed(user_id, f"could not read balance: {exc}") from exc

    if points == 0:
        logger.debug("Zero-point delta for user %d (%s) — nothing to apply", user_id, idempotency_key)
        return LedgerResult(new_balance=balance, points=0)

    if meta.require_non_negative and balance + points < 0:
        raise InsufficientPoints(
            user_id, f"balance {balance} cannot cover {-points} points"
        )

    opened = _open_intent(store, user_id, points, meta, idempotency_key)
    if isinstance(opened, LedgerResult):
        return opened
    intent = opened

    # Step 2 — atomic increment, stamps the intent applied
    try:
        new_balance = store.increment_balance(
            user_id,
            intent.points_change,
            intent.id,
            require_non_negative=meta.require_non_negative,
        )
    except IntentNotPending:
        return _superseded(store, intent, user_id)
    except ConditionFailed as exc:
        _mark(store, intent.id, IntentStatus.FAILED, expected=IntentStatus.PENDING, error=str(exc))
        raise InsufficientPoints(user_id, str(exc)) from exc
    except StoreError as exc:
        # If the call actually landed the intent is already applied and
        # this conditional mark is a no-op.
        _mark(store, intent.id, IntentStatus.FAILED, expected=IntentStatus.PENDING, error=str(exc))
        logger.error(
            "Balance update failed for user %d (%+d points, key %s): %s",
            user_id, intent.points_change, idempotency_key, exc,
        )
        raise BalanceUpdateFailed(user_id, f"could not update balance: {exc}") from exc

    # Step 3 — append
    entry_id: int | None = None
    try:
        entry_id = store.append_entry(intent, new_balance).id
    except DuplicateKey:
        # Reconciler rolled this intent forward in the meantime
        logger.info("Ledger entry for intent %d already present", intent.id)
    except StoreError as exc:
        logger.error(
            "Ledger append failed for user %d (%+d points, key %s): %s",
            user_id, intent.points_change, idempotency_key, exc,
        )
        compensated = _compensate(store, intent, f"ledger append failed: {exc}")
        raise LedgerAppendFailed(
            user_id, f"could not append ledger entry: {exc}", compensated=compensated,
        ) from exc

    # Step 4 — commit
    _mark(store, intent.id, IntentStatus.COMMITTED, expected=IntentStatus.APPLIED)

    logger.info(
        "Applied %+d points to user %d → %d (%s)",
        intent.points_change, user_id, new_balance, idempotency_key,
    )
    return LedgerResult(
        new_balance=new_balance,
        points=intent.points_change,
        intent_id=intent.id,
        entry_id=entry_id,
    )
