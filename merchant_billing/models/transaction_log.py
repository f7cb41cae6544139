"""Payment transaction ledger model."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Index, Numeric, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from merchant_billing.database import Base


class TransactionLog(Base):
    """One row per payment attempt. Never deleted."""

    __tablename__ = "payment_transaction_logs"
    __table_args__ = (
        # NULL provider ids are distinct, so the constraint only binds once the id is known
        UniqueConstraint("provider", "provider_transaction_id", name="uq_txn_log_provider_txn"),
        Index("ix_txn_log_provider_subscription", "provider_subscription_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    order_id: Mapped[str | None] = mapped_column(String(64))
    provider_subscription_id: Mapped[str | None] = mapped_column(String(128))
    provider_transaction_id: Mapped[str | None] = mapped_column(String(128))
    provider: Mapped[str] = mapped_column(String(30), nullable=False)

    # Amount
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Outcome
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, successful, failed, refunded
    transaction_type: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # sale, refund, recurring_initial, recurring_renewal, recurring_retry, charge
    error_message: Mapped[str | None] = mapped_column(Text)
    provider_response: Mapped[dict | None] = mapped_column(JSONB)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
