"""Base payment gateway interface.

All gateway adapters must implement this interface.
Business logic should NOT live in adapters - only gateway communication.
Adapters raise ``GatewayIntegrationError`` for transport failures; a declined
charge is a normal result with ``PaymentStatus.FAILED``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from merchant_billing.domain.payment_state import PaymentStatus


class GatewayType(str, Enum):
    """Supported payment gateways."""

    STRIPE = "stripe"
    PAYFAST = "payfast"
    STCPAY = "stcpay"


@dataclass
class ChargeRequest:
    """Immediate charge against a tokenized payment method."""

    amount: Decimal
    currency: str
    payment_method_token: str
    merchant_id: str
    reference_id: str
    description: str = ""
    order_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    # Provider customer the payment method is attached to, when there is one
    customer_id: str | None = None


@dataclass
class RefundRequest:
    """Full or partial refund of a prior provider transaction."""

    provider_transaction_id: str
    amount: Decimal
    currency: str
    reason: str = "requested_by_customer"


@dataclass
class RecurringRequest:
    """Provider-side recurring mandate setup."""

    merchant_id: str
    plan_id: str
    amount: Decimal
    currency: str
    interval: str
    payment_method_token: str
    customer_id: str | None = None
    interval_count: int = 1
    provider_price_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class RetryRequest:
    """Re-attempt collection for a recurring mandate."""

    provider_subscription_id: str
    amount: Decimal
    currency: str
    payment_method_token: str | None = None
    merchant_id: str | None = None
    reference_id: str | None = None


@dataclass
class PaymentResult:
    """Result of a payment operation."""

    status: PaymentStatus
    transaction_id: str | None = None
    error_message: str | None = None
    raw_response: dict | None = None

    @property
    def success(self) -> bool:
        return self.status == PaymentStatus.SUCCESSFUL


@dataclass
class RefundResult:
    """Result of a refund operation."""

    status: PaymentStatus
    refund_id: str | None = None
    error_message: str | None = None
    raw_response: dict | None = None

    @property
    def success(self) -> bool:
        return self.status == PaymentStatus.SUCCESSFUL


@dataclass
class RecurringPaymentDetails:
    """Provider view of a recurring mandate."""

    provider_subscription_id: str
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    plan_details: dict[str, Any] = field(default_factory=dict)
    raw_response: dict | None = None


@dataclass
class WebhookEvent:
    """Provider notification normalized into a common shape."""

    gateway: GatewayType
    event_type: str
    payload: dict[str, Any]
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str | None = None


@dataclass
class WebhookOutcome:
    """Provider-neutral payment outcome read from a webhook event."""

    status: PaymentStatus | None = None
    provider_transaction_id: str | None = None
    provider_subscription_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    merchant_id: str | None = None
    order_id: str | None = None
    error_message: str | None = None
    subscription_cancelled: bool = False
    period_start: datetime | None = None
    period_end: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form for handing off to a worker."""
        return {
            "status": self.status.value if self.status else None,
            "provider_transaction_id": self.provider_transaction_id,
            "provider_subscription_id": self.provider_subscription_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "merchant_id": self.merchant_id,
            "order_id": self.order_id,
            "error_message": self.error_message,
            "subscription_cancelled": self.subscription_cancelled,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WebhookOutcome":
        def _dt(value: str | None) -> datetime | None:
            return datetime.fromisoformat(value) if value else None

        return cls(
            status=PaymentStatus(data["status"]) if data.get("status") else None,
            provider_transaction_id=data.get("provider_transaction_id"),
            provider_subscription_id=data.get("provider_subscription_id"),
            amount=Decimal(data["amount"]) if data.get("amount") is not None else None,
            currency=data.get("currency"),
            merchant_id=data.get("merchant_id"),
            order_id=data.get("order_id"),
            error_message=data.get("error_message"),
            subscription_cancelled=bool(data.get("subscription_cancelled")),
            period_start=_dt(data.get("period_start")),
            period_end=_dt(data.get("period_end")),
        )


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    @property
    @abstractmethod
    def gateway_type(self) -> GatewayType:
        """Return the gateway type."""
        pass

    @property
    def bills_renewals_automatically(self) -> bool:
        """True if the provider charges renewals itself and reports them by webhook."""
        return False

    @abstractmethod
    async def process_payment(self, charge: ChargeRequest) -> PaymentResult:
        """Charge a tokenized payment method immediately.

        Raises:
            GatewayIntegrationError: On timeout, transport or provider error
        """
        pass

    @abstractmethod
    async def refund_payment(self, refund: RefundRequest) -> RefundResult:
        """Refund all or part of a prior transaction."""
        pass

    @abstractmethod
    async def create_recurring_payment(self, request: RecurringRequest) -> RecurringPaymentDetails:
        """Establish a provider-side recurring mandate."""
        pass

    @abstractmethod
    async def get_recurring_payment_details(self, provider_subscription_id: str) -> RecurringPaymentDetails:
        """Fetch the provider's view of a recurring mandate."""
        pass

    @abstractmethod
    async def cancel_recurring_payment(self, provider_subscription_id: str) -> None:
        """Cancel a recurring mandate at the provider."""
        pass

    @abstractmethod
    async def retry_recurring_payment(self, request: RetryRequest) -> PaymentResult:
        """Re-attempt collection for a recurring mandate."""
        pass

    @abstractmethod
    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str | None,
        secret: str,
    ) -> bool:
        """Verify a webhook signature against the raw request body.

        Returns False on any mismatch or malformed input; never raises.
        """
        pass

    @abstractmethod
    def parse_webhook_event(self, payload: bytes) -> WebhookEvent:
        """Parse a verified raw payload into a ``WebhookEvent``."""
        pass

    @abstractmethod
    def extract_outcome(self, event: WebhookEvent) -> WebhookOutcome | None:
        """Read the payment outcome carried by ``event``, if any."""
        pass
