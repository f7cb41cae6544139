"""Pydantic schemas for API validation."""

from merchant_billing.schemas.payment import (
    RefundCreate,
    SaleCreate,
    TransactionLogResponse,
)
from merchant_billing.schemas.subscription import (
    BillingDetailsIn,
    CancelRequest,
    PlanChangeRequest,
    RecurringCreate,
    RecurringDetailsResponse,
    SubscriptionCreate,
    SubscriptionResponse,
)

__all__ = [
    "BillingDetailsIn",
    "CancelRequest",
    "PlanChangeRequest",
    "RecurringCreate",
    "RecurringDetailsResponse",
    "RefundCreate",
    "SaleCreate",
    "SubscriptionCreate",
    "SubscriptionResponse",
    "TransactionLogResponse",
]
