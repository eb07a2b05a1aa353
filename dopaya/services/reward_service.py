"""
dopaya.services.reward_service — Reward Redemption & Welcome Bonus
====================================================================

The two non-donation balance mutations.  Both go through the ledger so the
balance/ledger invariant holds for them as well:

* Redemptions debit ``points_cost`` with ``require_non_negative`` so a
  balance can never be overdrawn, keyed ``redemption:{id}``.
* The welcome bonus credits a fixed amount once per user, keyed
  ``welcome_bonus:{user_id}``; the unique key is what makes it once-only.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from dopaya.constants import WELCOME_BONUS_POINTS
from dopaya.database.models import RedemptionStatus, TransactionType
from dopaya.services.ledger_service import (
    InsufficientPoints,
    LedgerError,
    LedgerMeta,
    LedgerResult,
    apply_points,
    redemption_key,
    welcome_bonus_key,
)
from dopaya.services.store import StoreError

if TYPE_CHECKING:
    from dopaya.database.models import Redemption
    from dopaya.services.store import PointsStore

logger = logging.getLogger(__name__)


class RewardNotFound(LookupError):
    pass


def redeem_reward(
    store: PointsStore,
    user_id: int,
    reward_id: int,
) -> tuple[Redemption, LedgerResult]:
    """Spend ``points_cost`` on *reward_id*.

    The redemption row is created ``pending`` first so the ledger entry can
    reference it, then moved to ``completed`` or ``cancelled``.

    Raises
    ------
    RewardNotFound
        If the reward does not exist or is inactive.
    InsufficientPoints
        If the balance cannot cover the cost.
    LedgerError
        Any other ledger failure; the redemption is cancelled.
    """
    reward = store.get_reward(reward_id)
    if reward is None or not reward.active:
        raise RewardNotFound(f"Reward {reward_id} not found")

    balance = store.get_balance(user_id)
    if balance < reward.points_cost:
        raise InsufficientPoints(
            user_id, f"balance {balance} cannot cover {reward.points_cost} points"
        )

    redemption = store.insert_redemption(
        user_id=user_id,
        reward_id=reward_id,
        points_spent=reward.points_cost,
        status=RedemptionStatus.PENDING.value,
    )

    meta = LedgerMeta(
        transaction_type=TransactionType.REDEMPTION,
        reward_id=reward_id,
        redemption_id=redemption.id,
        description=f"Redeemed reward {reward_id}",
        require_non_negative=True,
    )
    try:
        result = apply_points(
            store, user_id, -reward.points_cost, meta,
            idempotency_key=redemption_key(redemption.id),
        )
    except LedgerError:
        try:
            store.set_redemption_status(redemption.id, RedemptionStatus.CANCELLED.value)
            redemption.status = RedemptionStatus.CANCELLED.value
        except StoreError:
            logger.exception("Could not cancel redemption %d", redemption.id)
        raise

    # The debit is durable at this point; a lost status write must not
    # turn a charged redemption into a reported failure.
    redemption.status = RedemptionStatus.COMPLETED.value
    try:
        store.set_redemption_status(redemption.id, RedemptionStatus.COMPLETED.value)
    except StoreError:
        logger.exception(
            "Redemption %d debited but could not be marked completed", redemption.id
        )
    logger.info(
        "User %d redeemed reward %d for %d points (balance %s)",
        user_id, reward_id, reward.points_cost, result.new_balance,
    )
    return redemption, result


def apply_welcome_bonus(
    store: PointsStore,
    user_id: int,
    points: int = WELCOME_BONUS_POINTS,
) -> tuple[LedgerResult, bool]:
    """Credit the one-time welcome bonus.

    Returns ``(result, already_applied)``.
    """
    meta = LedgerMeta(
        transaction_type=TransactionType.WELCOME_BONUS,
        description="Welcome bonus",
    )
    result = apply_points(store, user_id, points, meta, idempotency_key=welcome_bonus_key(user_id))
    if result.was_duplicate:
        return result, True

    try:
        store.mark_welcome_bonus(user_id)
    except StoreError as exc:
        # The ledger key already guards against a second credit
        logger.warning("welcome_bonus_applied flag not set for user %d: %s", user_id, exc)
    logger.info("Welcome bonus of %d points applied to user %d", points, user_id)
    return result, False
