"""Subscription and plan database models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from merchant_billing.database import Base


class MerchantSubscriptionRecord(Base):
    """Persisted state of a merchant subscription aggregate."""

    __tablename__ = "merchant_subscriptions"
    __table_args__ = (
        # At most one live subscription per merchant
        Index(
            "uq_merchant_live_subscription",
            "merchant_id",
            unique=True,
            postgresql_where=text("status NOT IN ('cancelled', 'terminated')"),
        ),
        Index("ix_subscription_renewal_due", "status", "current_period_end"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, active, past_due, suspended, cancelled, terminated
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)

    # Dates
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Provider mandate
    provider: Mapped[str | None] = mapped_column(String(30))
    provider_subscription_id: Mapped[str | None] = mapped_column(String(128), index=True)

    # Billing (token only, never card data)
    billing_details: Mapped[dict] = mapped_column(JSONB, nullable=False)
    payment_history: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    # Dunning
    dunning_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_payment_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    suspended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Optimistic concurrency
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SubscriptionPlanRecord(Base):
    """Plan catalog entry (maintained by catalog administration)."""

    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    plan_type: Mapped[str] = mapped_column(String(30), nullable=False)
    pricing: Mapped[list] = mapped_column(JSONB, nullable=False)  # [{amount, currency, cycle}]
    features: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    usage_limits: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    support_tier: Mapped[str] = mapped_column(String(30), default="standard")
    is_active: Mapped[bool] = mapped_column(default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
