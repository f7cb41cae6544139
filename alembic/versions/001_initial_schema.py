"""Initial database schema.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

Creates the billing tables:
- Payment transaction ledger
- Merchant subscriptions
- Subscription plan catalog
"""

from typing import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create all database tables."""

    # ==================== LEDGER ====================
    op.create_table(
        "payment_transaction_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("merchant_id", sa.String(64), nullable=False),
        sa.Column("order_id", sa.String(64)),
        sa.Column("provider_subscription_id", sa.String(128)),
        sa.Column("provider_transaction_id", sa.String(128)),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("amount", sa.Numeric(18, 4), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("transaction_type", sa.String(30), nullable=False),
        sa.Column("error_message", sa.Text),
        sa.Column("provider_response", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("provider", "provider_transaction_id", name="uq_txn_log_provider_txn"),
    )
    op.create_index("ix_payment_transaction_logs_merchant_id", "payment_transaction_logs", ["merchant_id"])
    op.create_index(
        "ix_txn_log_provider_subscription",
        "payment_transaction_logs",
        ["provider_subscription_id", "created_at"],
    )

    # ==================== PLANS ====================
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("plan_type", sa.String(30), nullable=False),
        sa.Column("pricing", postgresql.JSONB, nullable=False),
        sa.Column("features", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("usage_limits", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("support_tier", sa.String(30), server_default="standard"),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ==================== SUBSCRIPTIONS ====================
    op.create_table(
        "merchant_subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("merchant_id", sa.String(64), nullable=False),
        sa.Column("plan_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("billing_cycle", sa.String(20), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True)),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("provider", sa.String(30)),
        sa.Column("provider_subscription_id", sa.String(128)),
        sa.Column("billing_details", postgresql.JSONB, nullable=False),
        sa.Column("payment_history", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("dunning_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_payment_attempt_at", sa.DateTime(timezone=True)),
        sa.Column("suspended_at", sa.DateTime(timezone=True)),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_merchant_subscriptions_provider_subscription_id",
        "merchant_subscriptions",
        ["provider_subscription_id"],
    )
    op.create_index("ix_subscription_renewal_due", "merchant_subscriptions", ["status", "current_period_end"])
    # At most one live subscription per merchant
    op.create_index(
        "uq_merchant_live_subscription",
        "merchant_subscriptions",
        ["merchant_id"],
        unique=True,
        postgresql_where=sa.text("status NOT IN ('cancelled', 'terminated')"),
    )


def downgrade() -> None:
    """Drop all database tables in reverse order."""
    op.drop_table("merchant_subscriptions")
    op.drop_table("subscription_plans")
    op.drop_table("payment_transaction_logs")
