"""
dopaya.services.store — Single-Row Storage Primitives
=======================================================

The storage collaborator as the ledger sees it: every method is one
independent remote call (its own short transaction) touching a single row
through an ``eq`` filter.  Nothing here spans calls, so multi-step protocols
(the points saga, the donation pipeline) must be built on top of these
primitives.

Balance mutations are **atomic server-side increments**
(``SET impact_points = impact_points + :delta``), never read-modify-write,
so concurrent callers cannot lose an update.  The increment also stamps the
caller's ledger intent as ``applied`` in the same statement batch, the way a
stored procedure invoked over RPC would.

Error mapping:
  * ``IntegrityError``   → :class:`DuplicateKey` (unique constraint hit)
  * other DB errors      → :class:`StoreUnavailable`
  * reads are retried with exponential backoff; writes never are.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dopaya.database.engine import get_session
from dopaya.database.models import (
    Donation,
    IntentStatus,
    LedgerIntent,
    PaymentEvent,
    Project,
    Redemption,
    Reward,
    User,
    UserTransaction,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from dopaya.config import DopayaConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class StoreError(Exception):
    """Base class for storage failures."""


class StoreUnavailable(StoreError):
    """A remote call failed (connection, timeout, server error)."""

    def __init__(self, op: str, cause: Exception | None = None) -> None:
        super().__init__(f"store call {op!r} failed: {cause}")
        self.op = op
        self.cause = cause


class DuplicateKey(StoreError):
    """An insert hit a uniqueness constraint."""

    def __init__(self, op: str) -> None:
        super().__init__(f"store call {op!r} hit a unique constraint")
        self.op = op


class RowNotFound(StoreError, LookupError):
    """The ``eq`` filter matched no row."""


class ConditionFailed(StoreError):
    """A conditional update's precondition did not hold."""


class IntentNotPending(ConditionFailed):
    """The intent left ``pending`` before its increment landed."""


def row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[col.name] = val
    return result


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
class PointsStore:
    """Storage collaborator backed by a SQLAlchemy engine.

    Usage::

        store = PointsStore(engine, read_attempts=3, read_backoff=0.2)
        balance = store.get_balance(user_id)
        new_balance = store.increment_balance(user_id, 100, intent_id=7)
    """

    def __init__(
        self,
        engine: Engine,
        *,
        read_attempts: int = 3,
        read_backoff: float = 0.2,
    ) -> None:
        self._engine = engine
        self._read_attempts = max(1, read_attempts)
        self._read_backoff = read_backoff

    @classmethod
    def from_config(cls, engine: Engine, cfg: DopayaConfig) -> PointsStore:
        return cls(
            engine,
            read_attempts=cfg.store_read_attempts,
            read_backoff=cfg.store_read_backoff_seconds,
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    # -------------------------------------------------------------------
    # Call plumbing
    # -------------------------------------------------------------------
    @contextmanager
    def _call(self, op: str) -> Iterator[Session]:
        try:
            with get_session(self._engine) as session:
                yield session
        except IntegrityError as exc:
            raise DuplicateKey(op) from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailable(op, exc) from exc

    def _read(self, op: str, fn: Callable[[Session], T]) -> T:
        delay = self._read_backoff
        for attempt in range(1, self._read_attempts + 1):
            try:
                with self._call(op) as session:
                    return fn(session)
            except StoreUnavailable:
                if attempt >= self._read_attempts:
                    raise
                logger.warning(
                    "Store read %s failed (attempt %d/%d) — retrying in %.2fs",
                    op, attempt, self._read_attempts, delay,
                )
                time.sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    # -------------------------------------------------------------------
    # Users & balances
    # -------------------------------------------------------------------
    def get_balance(self, user_id: int) -> int:
        def _q(session: Session) -> int:
            balance = session.scalar(
                select(User.impact_points).where(User.id == user_id)
            )
            if balance is None:
                raise RowNotFound(f"user {user_id} not found")
            return balance

        return self._read("get_balance", _q)

    def find_user_id_by_auth_id(self, auth_user_id: str) -> int | None:
        return self._read(
            "find_user_id_by_auth_id",
            lambda s: s.scalar(select(User.id).where(User.auth_user_id == auth_user_id)),
        )

    def user_exists(self, user_id: int) -> bool:
        return self._read(
            "user_exists",
            lambda s: s.scalar(select(User.id).where(User.id == user_id)) is not None,
        )

    def increment_balance(
        self,
        user_id: int,
        delta: int,
        intent_id: int,
        *,
        require_non_negative: bool = False,
    ) -> int:
        """Atomically add *delta* and mark the intent ``applied``.

        Raises
        ------
        RowNotFound
            If the user does not exist.
        ConditionFailed
            If *require_non_negative* and the balance would drop below zero.
        IntentNotPending
            If the intent is no longer ``pending`` (the reconciler abandoned
            it); the increment is rolled back.
        """
        with self._call("increment_balance") as session:
            stmt = update(User).where(User.id == user_id)
            if require_non_negative:
                stmt = stmt.where(User.impact_points + delta >= 0)
            stmt = (
                stmt.values(impact_points=User.impact_points + delta)
                .returning(User.impact_points)
                .execution_options(synchronize_session=False)
            )
            new_balance = session.execute(stmt).scalar_one_or_none()
            if new_balance is None:
                if session.scalar(select(User.id).where(User.id == user_id)) is None:
                    raise RowNotFound(f"user {user_id} not found")
                raise ConditionFailed(
                    f"user {user_id} balance cannot absorb {delta:+d}"
                )

            stamped = session.execute(
                update(LedgerIntent)
                .where(
                    LedgerIntent.id == intent_id,
                    LedgerIntent.status == IntentStatus.PENDING.value,
                )
                .values(status=IntentStatus.APPLIED.value, balance_after=new_balance)
                .execution_options(synchronize_session=False)
            )
            if stamped.rowcount == 0:
                raise IntentNotPending(f"intent {intent_id} is no longer pending")
            return new_balance

    def revert_balance(self, user_id: int, delta: int, intent_id: int, reason: str) -> int:
        """Compensate an applied intent: subtract *delta*, mark ``compensated``."""
        with self._call("revert_balance") as session:
            new_balance = session.execute(
                update(User)
                .where(User.id == user_id)
                .values(impact_points=User.impact_points - delta)
                .returning(User.impact_points)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
            if new_balance is None:
                raise RowNotFound(f"user {user_id} not found")

            session.execute(
                update(LedgerIntent)
                .where(
                    LedgerIntent.id == intent_id,
                    LedgerIntent.status == IntentStatus.APPLIED.value,
                )
                .values(status=IntentStatus.COMPENSATED.value, error=reason)
                .execution_options(synchronize_session=False)
            )
            return new_balance

    def mark_welcome_bonus(self, user_id: int) -> None:
        with self._call("mark_welcome_bonus") as session:
            session.execute(
                update(User)
                .where(User.id == user_id)
                .values(welcome_bonus_applied=True)
                .execution_options(synchronize_session=False)
            )

    # -------------------------------------------------------------------
    # Ledger intents & entries
    # -------------------------------------------------------------------
    def find_intent(self, idempotency_key: str) -> LedgerIntent | None:
        return self._read(
            "find_intent",
            lambda s: s.scalar(
                select(LedgerIntent).where(LedgerIntent.idempotency_key == idempotency_key)
            ),
        )

    def create_intent(self, **fields: Any) -> LedgerIntent:
        with self._call("create_intent") as session:
            intent = LedgerIntent(status=IntentStatus.PENDING.value, **fields)
            session.add(intent)
            session.flush()
            session.refresh(intent)
            return intent

    def set_intent_status(
        self,
        intent_id: int,
        status: IntentStatus,
        *,
        expected: IntentStatus | None = None,
        error: str | None = None,
    ) -> bool:
        """Move an intent to *status*; returns False if *expected* didn't match."""
        with self._call("set_intent_status") as session:
            stmt = update(LedgerIntent).where(LedgerIntent.id == intent_id)
            if expected is not None:
                stmt = stmt.where(LedgerIntent.status == expected.value)
            values: dict[str, Any] = {"status": status.value}
            if error is not None:
                values["error"] = error
            result = session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def list_intents(
        self,
        status: IntentStatus,
        *,
        updated_before: datetime | None = None,
        limit: int = 500,
    ) -> list[LedgerIntent]:
        def _q(session: Session) -> list[LedgerIntent]:
            stmt = select(LedgerIntent).where(LedgerIntent.status == status.value)
            if updated_before is not None:
                stmt = stmt.where(LedgerIntent.updated_at < updated_before)
            return list(session.scalars(stmt.order_by(LedgerIntent.id).limit(limit)))

        return self._read("list_intents", _q)

    def append_entry(self, intent: LedgerIntent, balance_after: int) -> UserTransaction:
        """Insert the ledger row for *intent*; a replay raises DuplicateKey."""
        with self._call("append_entry") as session:
            entry = UserTransaction(
                user_id=intent.user_id,
                transaction_type=intent.transaction_type,
                project_id=intent.project_id,
                donation_id=intent.donation_id,
                reward_id=intent.reward_id,
                redemption_id=intent.redemption_id,
                support_amount=intent.support_amount,
                points_change=intent.points_change,
                points_balance_after=balance_after,
                description=intent.description,
                intent_id=intent.id,
            )
            session.add(entry)
            session.flush()
            session.refresh(entry)
            return entry

    def find_entry_for_intent(self, intent_id: int) -> UserTransaction | None:
        return self._read(
            "find_entry_for_intent",
            lambda s: s.scalar(
                select(UserTransaction).where(UserTransaction.intent_id == intent_id)
            ),
        )

    def list_entries(self, user_id: int, *, limit: int = 100) -> list[UserTransaction]:
        return self._read(
            "list_entries",
            lambda s: list(s.scalars(
                select(UserTransaction)
                .where(UserTransaction.user_id == user_id)
                .order_by(UserTransaction.id.desc())
                .limit(limit)
            )),
        )

    def ledger_totals(self) -> dict[int, int]:
        """``{user_id: sum(points_change)}`` over the whole ledger."""
        def _q(session: Session) -> dict[int, int]:
            rows = session.execute(
                select(
                    UserTransaction.user_id,
                    func.sum(UserTransaction.points_change).label("total"),
                ).group_by(UserTransaction.user_id)
            ).all()
            return {row.user_id: int(row.total or 0) for row in rows}

        return self._read("ledger_totals", _q)

    def balances(self) -> dict[int, int]:
        return self._read(
            "balances",
            lambda s: {
                row.id: row.impact_points
                for row in s.execute(select(User.id, User.impact_points)).all()
            },
        )

    # -------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------
    def get_project_row(self, project_id: int) -> dict | None:
        return self._read(
            "get_project_row",
            lambda s: row_to_dict(s.get(Project, project_id)),
        )

    def increment_project_stats(self, project_id: int, amount: float) -> None:
        with self._call("increment_project_stats") as session:
            session.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(raised=Project.raised + amount, donors=Project.donors + 1)
                .execution_options(synchronize_session=False)
            )

    # -------------------------------------------------------------------
    # Donations
    # -------------------------------------------------------------------
    def insert_donation(self, **fields: Any) -> Donation:
        with self._call("insert_donation") as session:
            donation = Donation(**fields)
            session.add(donation)
            session.flush()
            session.refresh(donation)
            return donation

    def get_donation_by_reference(self, payment_reference: str) -> Donation | None:
        return self._read(
            "get_donation_by_reference",
            lambda s: s.scalar(
                select(Donation).where(Donation.payment_reference == payment_reference)
            ),
        )

    def get_donation(self, donation_id: int) -> Donation | None:
        return self._read("get_donation", lambda s: s.get(Donation, donation_id))

    def update_donation(self, donation_id: int, **values: Any) -> None:
        with self._call("update_donation") as session:
            session.execute(
                update(Donation)
                .where(Donation.id == donation_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    def list_donations(self, user_id: int, *, limit: int = 100) -> list[Donation]:
        return self._read(
            "list_donations",
            lambda s: list(s.scalars(
                select(Donation)
                .where(Donation.user_id == user_id)
                .order_by(Donation.id.desc())
                .limit(limit)
            )),
        )

    # -------------------------------------------------------------------
    # Payment events
    # -------------------------------------------------------------------
    def record_payment_event(
        self, event_id: str, event_type: str, payment_reference: str | None,
    ) -> tuple[PaymentEvent, bool]:
        """Insert the event id; returns ``(row, created)``.

        A second delivery bumps ``attempts`` on the existing row instead.
        """
        try:
            with self._call("record_payment_event") as session:
                row = PaymentEvent(
                    event_id=event_id,
                    event_type=event_type,
                    payment_reference=payment_reference,
                )
                session.add(row)
                session.flush()
                session.refresh(row)
                return row, True
        except DuplicateKey:
            pass

        with self._call("record_payment_event_retry") as session:
            session.execute(
                update(PaymentEvent)
                .where(PaymentEvent.event_id == event_id)
                .values(attempts=PaymentEvent.attempts + 1)
                .execution_options(synchronize_session=False)
            )
            existing = session.get(PaymentEvent, event_id)
            if existing is None:
                raise RowNotFound(f"payment event {event_id} vanished")
            session.refresh(existing)
            return existing, False

    def set_payment_event_status(
        self, event_id: str, status: str, *, error: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status, "last_error": error}
        if status in ("processed", "ignored"):
            values["processed_at"] = datetime.now(UTC)
        with self._call("set_payment_event_status") as session:
            session.execute(
                update(PaymentEvent)
                .where(PaymentEvent.event_id == event_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    # -------------------------------------------------------------------
    # Rewards & redemptions
    # -------------------------------------------------------------------
    def get_reward(self, reward_id: int) -> Reward | None:
        return self._read("get_reward", lambda s: s.get(Reward, reward_id))

    def insert_redemption(self, **fields: Any) -> Redemption:
        with self._call("insert_redemption") as session:
            redemption = Redemption(**fields)
            session.add(redemption)
            session.flush()
            session.refresh(redemption)
            return redemption

    def set_redemption_status(self, redemption_id: int, status: str) -> None:
        with self._call("set_redemption_status") as session:
            session.execute(
                update(Redemption)
                .where(Redemption.id == redemption_id)
                .values(status=status)
                .execution_options(synchronize_session=False)
            )
