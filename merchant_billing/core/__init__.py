"""Core utilities: exceptions, locking and middleware."""

from merchant_billing.core.exceptions import (
    AppException,
    ConcurrencyConflictError,
    ConfigurationError,
    DunningProcessError,
    GatewayIntegrationError,
    InvalidSubscriptionStateError,
    NotFoundError,
    PaymentProcessingError,
    RefundProcessingError,
    SubscriptionManagementError,
    UnsupportedGatewayError,
    ValidationError,
    WebhookVerificationError,
)

__all__ = [
    "AppException",
    "ConcurrencyConflictError",
    "ConfigurationError",
    "DunningProcessError",
    "GatewayIntegrationError",
    "InvalidSubscriptionStateError",
    "NotFoundError",
    "PaymentProcessingError",
    "RefundProcessingError",
    "SubscriptionManagementError",
    "UnsupportedGatewayError",
    "ValidationError",
    "WebhookVerificationError",
]
