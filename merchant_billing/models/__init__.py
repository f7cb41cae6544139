"""Database models."""

from merchant_billing.models.subscription import MerchantSubscriptionRecord, SubscriptionPlanRecord
from merchant_billing.models.transaction_log import TransactionLog

__all__ = [
    # Ledger
    "TransactionLog",
    # Subscriptions
    "MerchantSubscriptionRecord",
    "SubscriptionPlanRecord",
]
