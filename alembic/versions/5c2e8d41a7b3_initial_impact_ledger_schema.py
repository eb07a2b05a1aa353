"""Initial impact & points ledger schema

Revision ID: 5c2e8d41a7b3
Revises:
Create Date: 2026-10-19 09:12:31.418207

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5c2e8d41a7b3'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _ts(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=True,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create users, projects, donations, the points ledger and its intents."""

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(100), nullable=False, unique=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("auth_user_id", sa.String(64), nullable=True, unique=True),
        sa.Column("impact_points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("welcome_bonus_applied", sa.Boolean, nullable=True,
                  server_default=sa.false()),
        _ts("created_at"),
        _ts("updated_at"),
    )

    # --- projects ---
    op.create_table(
        "projects",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("slug", sa.String(150), nullable=False, unique=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("status", sa.String(20), nullable=True, server_default="active"),
        sa.Column("impact_factor", sa.Float, nullable=True),
        sa.Column("impact_tiers", postgresql.JSONB, nullable=True),
        sa.Column("impact_unit_singular_en", sa.String(100), nullable=True),
        sa.Column("impact_unit_plural_en", sa.String(100), nullable=True),
        sa.Column("impact_unit_singular_de", sa.String(100), nullable=True),
        sa.Column("impact_unit_plural_de", sa.String(100), nullable=True),
        sa.Column("cta_template_en", sa.Text, nullable=True),
        sa.Column("cta_template_de", sa.Text, nullable=True),
        sa.Column("past_template_en", sa.Text, nullable=True),
        sa.Column("past_template_de", sa.Text, nullable=True),
        sa.Column("impact_points_multiplier", sa.Float, nullable=True, server_default="10"),
        sa.Column("raised", sa.Float, nullable=False, server_default="0"),
        sa.Column("donors", sa.Integer, nullable=False, server_default="0"),
        _ts("created_at"),
    )

    # --- donations ---
    op.create_table(
        "donations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("project_id", sa.Integer, sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column("tip_amount", sa.Float, nullable=False, server_default="0"),
        sa.Column("impact_points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("payment_reference", sa.String(200), nullable=True, unique=True),
        sa.Column("calculated_impact", sa.Float, nullable=True),
        sa.Column("impact_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("generated_text_past_en", sa.Text, nullable=True),
        sa.Column("generated_text_past_de", sa.Text, nullable=True),
        _ts("created_at"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_donations_user_time", "donations", ["user_id", "created_at"])
    op.create_index("ix_donations_project", "donations", ["project_id"])

    # --- ledger_intents ---
    op.create_table(
        "ledger_intents",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("idempotency_key", sa.String(200), nullable=False, unique=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("transaction_type", sa.String(30), nullable=False),
        sa.Column("points_change", sa.Integer, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("balance_after", sa.Integer, nullable=True),
        sa.Column("project_id", sa.Integer, nullable=True),
        sa.Column("donation_id", sa.Integer, nullable=True),
        sa.Column("reward_id", sa.Integer, nullable=True),
        sa.Column("redemption_id", sa.Integer, nullable=True),
        sa.Column("support_amount", sa.Float, nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index(
        "ix_ledger_intents_status_time", "ledger_intents", ["status", "updated_at"],
    )

    # --- user_transactions (append-only ledger) ---
    op.create_table(
        "user_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("transaction_type", sa.String(30), nullable=False),
        sa.Column("project_id", sa.Integer, nullable=True),
        sa.Column("donation_id", sa.Integer, nullable=True),
        sa.Column("reward_id", sa.Integer, nullable=True),
        sa.Column("redemption_id", sa.Integer, nullable=True),
        sa.Column("support_amount", sa.Float, nullable=True),
        sa.Column("points_change", sa.Integer, nullable=False),
        sa.Column("points_balance_after", sa.Integer, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "intent_id", sa.Integer, sa.ForeignKey("ledger_intents.id"),
            nullable=True, unique=True,
        ),
        _ts("created_at"),
    )
    op.create_index(
        "ix_user_transactions_user_time", "user_transactions", ["user_id", "created_at"],
    )

    # --- payment_events ---
    op.create_table(
        "payment_events",
        sa.Column("event_id", sa.String(200), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payment_reference", sa.String(200), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="processing"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="1"),
        sa.Column("last_error", sa.Text, nullable=True),
        _ts("received_at"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )

    # --- rewards / redemptions ---
    op.create_table(
        "rewards",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("company_name", sa.String(200), nullable=True),
        sa.Column("points_cost", sa.Integer, nullable=False),
        sa.Column("active", sa.Boolean, nullable=True, server_default=sa.true()),
    )
    op.create_table(
        "redemptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reward_id", sa.Integer, sa.ForeignKey("rewards.id"), nullable=False),
        sa.Column("points_spent", sa.Integer, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        _ts("created_at"),
    )


def downgrade() -> None:
    """Drop everything in reverse dependency order."""
    op.drop_table("redemptions")
    op.drop_table("rewards")
    op.drop_table("payment_events")
    op.drop_index("ix_user_transactions_user_time", table_name="user_transactions")
    op.drop_table("user_transactions")
    op.drop_index("ix_ledger_intents_status_time", table_name="ledger_intents")
    op.drop_table("ledger_intents")
    op.drop_index("ix_donations_project", table_name="donations")
    op.drop_index("ix_donations_user_time", table_name="donations")
    op.drop_table("donations")
    op.drop_table("projects")
    op.drop_table("users")
