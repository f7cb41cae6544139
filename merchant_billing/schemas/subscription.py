"""Subscription and recurring mandate schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from merchant_billing.domain.plan import BillingCycle
from merchant_billing.domain.subscription import MerchantSubscription


class BillingDetailsIn(BaseModel):
    payment_method_token: str = Field(..., min_length=1)
    contact_email: str = Field(..., min_length=3, max_length=255)
    address: dict[str, str] | None = None


class SubscriptionCreate(BaseModel):
    """Schema for subscribing a merchant to a plan."""

    merchant_id: str = Field(..., min_length=1, max_length=64)
    plan_id: str = Field(..., min_length=1, max_length=64)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    provider: str = Field(..., min_length=1, max_length=32)
    billing_details: BillingDetailsIn


class PlanChangeRequest(BaseModel):
    new_plan_id: str = Field(..., min_length=1, max_length=64)
    new_cycle: BillingCycle | None = None


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=255)


class PaymentRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    occurred_at: datetime
    success: bool
    amount: Decimal | None = None
    currency: str | None = None
    provider_transaction_id: str | None = None
    reason: str | None = None


class SubscriptionResponse(BaseModel):
    """Schema for a subscription. Billing details are reduced to the contact email."""

    id: str
    merchant_id: str
    plan_id: str
    status: str
    billing_cycle: str
    start_date: datetime
    end_date: datetime | None
    current_period_start: datetime
    current_period_end: datetime
    provider: str | None
    provider_subscription_id: str | None
    contact_email: str
    dunning_attempts: int
    last_payment_attempt_at: datetime | None
    suspended_at: datetime | None
    payment_history: list[PaymentRecordResponse]

    @classmethod
    def from_domain(cls, subscription: MerchantSubscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            merchant_id=subscription.merchant_id,
            plan_id=subscription.plan_id,
            status=subscription.status.value,
            billing_cycle=subscription.billing_cycle.value,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            provider=subscription.provider,
            provider_subscription_id=subscription.provider_subscription_id,
            contact_email=subscription.billing_details.contact_email,
            dunning_attempts=subscription.dunning_attempts,
            last_payment_attempt_at=subscription.last_payment_attempt_at,
            suspended_at=subscription.suspended_at,
            payment_history=[
                PaymentRecordResponse.model_validate(record) for record in subscription.payment_history
            ],
        )


class RecurringCreate(BaseModel):
    """Schema for creating a provider-side recurring mandate directly."""

    provider: str = Field(..., min_length=1, max_length=32)
    merchant_id: str = Field(..., min_length=1, max_length=64)
    plan_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    interval: str = Field("month", pattern="^(day|week|month|year)$")
    interval_count: int = Field(1, ge=1, le=12)
    payment_method_token: str = Field(..., min_length=1)
    customer_id: str | None = None
    provider_price_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class RecurringDetailsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_subscription_id: str
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    plan_details: dict[str, Any] = Field(default_factory=dict)
