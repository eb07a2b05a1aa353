"""
dopaya.database.models — SQLAlchemy 2.0 Data Models
=====================================================

Tables:
- users              — Donor profiles with the running Impact Points balance
- projects           — Social-enterprise projects + impact configuration
- donations          — One row per completed payment (never deleted)
- ledger_intents     — Persisted intent for every balance mutation
- user_transactions  — Append-only points ledger
- payment_events     — Processed payment-provider event ids
- rewards            — Reward catalogue
- redemptions        — Reward redemptions
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON everywhere else (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Dopaya ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class TransactionType(enum.StrEnum):
    """Kinds of balance mutation recorded in the ledger."""
    DONATION = "donation"
    REDEMPTION = "redemption"
    WELCOME_BONUS = "welcome_bonus"


class DonationStatus(enum.StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"


class DonationSource(enum.StrEnum):
    """Which front door created the donation."""
    DONATE_NOW = "donate_now"
    PAYMENT_WEBHOOK = "payment_webhook"


class IntentStatus(enum.StrEnum):
    """Lifecycle of a ledger intent.

    pending → applied → committed            (happy path)
    pending → failed                         (balance write failed)
    applied → compensated                    (ledger append failed, reverted)
    pending → abandoned                      (reconciler: never applied)
    """
    PENDING = "pending"
    APPLIED = "applied"
    COMMITTED = "committed"
    COMPENSATED = "compensated"
    FAILED = "failed"
    ABANDONED = "abandoned"


class PaymentEventStatus(enum.StrEnum):
    PROCESSING = "processing"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


class RedemptionStatus(enum.StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Users — one row per donor
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(255), default=None)
    # Identity-provider UUID; payment metadata may carry this instead of id
    auth_user_id: Mapped[str | None] = mapped_column(
        String(64), unique=True, default=None
    )
    impact_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    welcome_bonus_applied: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    donations: Mapped[list[Donation]] = relationship(back_populates="user")

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.username!r} points={self.impact_points}>"


# ---------------------------------------------------------------------------
# Projects — impact configuration is authored out-of-band (admin tooling)
# ---------------------------------------------------------------------------
class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(150), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active")

    # Linear impact
    impact_factor: Mapped[float | None] = mapped_column(Float, nullable=True)
    # Non-linear impact: list of {min_amount, max_amount, impact_factor,
    # cta_template_en, cta_template_de, past_template_en, past_template_de}
    impact_tiers: Mapped[list | None] = mapped_column(JSONType, nullable=True)

    impact_unit_singular_en: Mapped[str | None] = mapped_column(String(100))
    impact_unit_plural_en: Mapped[str | None] = mapped_column(String(100))
    impact_unit_singular_de: Mapped[str | None] = mapped_column(String(100))
    impact_unit_plural_de: Mapped[str | None] = mapped_column(String(100))
    cta_template_en: Mapped[str | None] = mapped_column(Text)
    cta_template_de: Mapped[str | None] = mapped_column(Text)
    past_template_en: Mapped[str | None] = mapped_column(Text)
    past_template_de: Mapped[str | None] = mapped_column(Text)

    impact_points_multiplier: Mapped[float | None] = mapped_column(Float, default=10.0)

    # Running stats
    raised: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    donors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Project id={self.id} slug={self.slug!r}>"


# ---------------------------------------------------------------------------
# Donations — created exactly once per completed payment
# ---------------------------------------------------------------------------
class Donation(Base):
    __tablename__ = "donations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False
    )
    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id"), nullable=False
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    tip_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    impact_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DonationStatus.PENDING.value
    )
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    # Payment-intent id or client idempotency key; the dedup gate
    payment_reference: Mapped[str | None] = mapped_column(
        String(200), unique=True, nullable=True
    )

    calculated_impact: Mapped[float | None] = mapped_column(Float, nullable=True)
    impact_snapshot: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    generated_text_past_en: Mapped[str | None] = mapped_column(Text, nullable=True)
    generated_text_past_de: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    user: Mapped[User] = relationship(back_populates="donations")

    __table_args__ = (
        Index("ix_donations_user_time", "user_id", "created_at"),
        Index("ix_donations_project", "project_id"),
    )

    def __repr__(self) -> str:
        return f"<Donation id={self.id} user={self.user_id} amount={self.amount}>"


# ---------------------------------------------------------------------------
# LedgerIntent — written before any balance mutation
# ---------------------------------------------------------------------------
class LedgerIntent(Base):
    __tablename__ = "ledger_intents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str] = mapped_column(
        String(200), nullable=False, unique=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False
    )
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False)
    points_change: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=IntentStatus.PENDING.value
    )
    balance_after: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Ledger entry payload, copied verbatim on append
    project_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    donation_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reward_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    redemption_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    support_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_ledger_intents_status_time", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<LedgerIntent id={self.id} key={self.idempotency_key!r} status={self.status}>"


# ---------------------------------------------------------------------------
# UserTransaction — append-only points ledger
# ---------------------------------------------------------------------------
class UserTransaction(Base):
    __tablename__ = "user_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False
    )
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False)
    project_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    donation_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reward_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    redemption_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    support_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    points_change: Mapped[int] = mapped_column(Integer, nullable=False)
    points_balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # One entry per intent; a replayed append hits this constraint
    intent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("ledger_intents.id"), unique=True, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_user_transactions_user_time", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserTransaction id={self.id} user={self.user_id} "
            f"change={self.points_change:+d}>"
        )


# ---------------------------------------------------------------------------
# PaymentEvent — provider event ids seen by the webhook
# ---------------------------------------------------------------------------
class PaymentEvent(Base):
    __tablename__ = "payment_events"

    event_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentEventStatus.PROCESSING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<PaymentEvent id={self.event_id!r} status={self.status}>"


# ---------------------------------------------------------------------------
# Rewards & Redemptions
# ---------------------------------------------------------------------------
class Reward(Base):
    __tablename__ = "rewards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    company_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    points_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return f"<Reward id={self.id} title={self.title!r} cost={self.points_cost}>"


class Redemption(Base):
    __tablename__ = "redemptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False
    )
    reward_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("rewards.id"), nullable=False
    )
    points_spent: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RedemptionStatus.PENDING.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Redemption id={self.id} user={self.user_id} reward={self.reward_id}>"
