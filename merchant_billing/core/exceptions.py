"""Custom application exceptions."""

from typing import Any

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base application exception."""

    def __init__(
        self,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = "An unexpected error occurred",
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class ValidationError(AppException):
    """Validation error exception."""

    def __init__(self, detail: str = "Validation failed", errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class NotFoundError(AppException):
    """Resource not found exception."""

    def __init__(self, resource: str = "Resource", identifier: str | None = None) -> None:
        detail = f"{resource} not found"
        if identifier:
            detail = f"{resource} with ID '{identifier}' not found"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class ConfigurationError(AppException):
    """Required configuration (secret, feature flag) is missing."""

    def __init__(self, detail: str = "Service is not configured") -> None:
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


class UnsupportedGatewayError(AppException):
    """Gateway is unknown or disabled."""

    def __init__(self, gateway: str) -> None:
        self.gateway = gateway
        super().__init__(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail=f"Gateway '{gateway}' is not supported or not enabled",
        )


class WebhookVerificationError(AppException):
    """Webhook signature rejected."""

    def __init__(self, detail: str = "Invalid webhook signature") -> None:
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


class PaymentProcessingError(AppException):
    """Payment processing error."""

    def __init__(self, detail: str = "Payment processing failed") -> None:
        super().__init__(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=detail)


class RefundProcessingError(AppException):
    """Refund processing error."""

    def __init__(self, detail: str = "Refund processing failed") -> None:
        super().__init__(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=detail)


class GatewayIntegrationError(AppException):
    """Transport-level failure talking to a payment provider."""

    def __init__(self, gateway: str, detail: str | None = None, raw_error: Any = None) -> None:
        self.gateway = gateway
        self.raw_error = raw_error
        message = f"Gateway '{gateway}' request failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=message)


class SubscriptionManagementError(GatewayIntegrationError):
    """Provider-side recurring mandate operation failed."""


class InvalidSubscriptionStateError(AppException):
    """Operation not allowed in the subscription's current status."""

    def __init__(self, detail: str = "This operation is not allowed for the current subscription status") -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class ConcurrencyConflictError(AppException):
    """Optimistic version check failed."""

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"{resource} '{identifier}' was modified concurrently",
        )


class DunningProcessError(AppException):
    """Unexpected failure during a dunning pass."""

    def __init__(self, detail: str = "Dunning process failed") -> None:
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)
