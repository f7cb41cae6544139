"""Payment-related Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SaleCreate(BaseModel):
    """Schema for a one-time merchant sale."""

    merchant_id: str = Field(..., min_length=1, max_length=64)
    provider: str = Field(..., min_length=1, max_length=32)
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    payment_method_token: str = Field(..., min_length=1)
    order_id: str | None = Field(None, max_length=64)
    description: str = Field("", max_length=255)
    metadata: dict[str, str] = Field(default_factory=dict)


class RefundCreate(BaseModel):
    """Schema for refunding a sale."""

    provider: str = Field(..., min_length=1, max_length=32)
    provider_transaction_id: str = Field(..., min_length=1)
    # Full refund when omitted
    amount: Decimal | None = Field(None, gt=0)
    reason: str = Field("requested_by_customer", max_length=255)


class TransactionLogResponse(BaseModel):
    """Schema for a ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    merchant_id: str
    order_id: str | None
    provider: str
    provider_transaction_id: str | None
    provider_subscription_id: str | None
    amount: Decimal
    currency: str
    status: str
    transaction_type: str
    error_message: str | None
    created_at: datetime
    updated_at: datetime
