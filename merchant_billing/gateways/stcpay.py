"""STC Pay wallet gateway adapter.

STC Pay has no provider-side subscription engine: a recurring mandate is a
stored customer consent that we charge ourselves on each renewal.
"""

import hashlib
import hmac
import json
import logging
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

import httpx

from merchant_billing.config import Settings
from merchant_billing.core.exceptions import (
    GatewayIntegrationError,
    RefundProcessingError,
    SubscriptionManagementError,
)
from merchant_billing.domain.payment_state import PaymentStatus
from merchant_billing.gateways.base import (
    ChargeRequest,
    GatewayType,
    PaymentGateway,
    PaymentResult,
    RecurringPaymentDetails,
    RecurringRequest,
    RefundRequest,
    RefundResult,
    RetryRequest,
    WebhookEvent,
    WebhookOutcome,
)

logger = logging.getLogger(__name__)

STCPAY_STATUS_MAP = {
    "PENDING": PaymentStatus.PENDING,
    "CREATED": PaymentStatus.PENDING,
    "AUTHORIZED": PaymentStatus.PENDING,
    "COMPLETED": PaymentStatus.SUCCESSFUL,
    "SUCCESS": PaymentStatus.SUCCESSFUL,
    "PAID": PaymentStatus.SUCCESSFUL,
    "SETTLED": PaymentStatus.SUCCESSFUL,
    "FAILED": PaymentStatus.FAILED,
    "DECLINED": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.FAILED,
}

STCPAY_REFUND_STATUS_MAP = {
    "PENDING": PaymentStatus.PENDING,
    "COMPLETED": PaymentStatus.SUCCESSFUL,
    "SUCCESS": PaymentStatus.SUCCESSFUL,
}


def map_stcpay_status(stcpay_status: str | None) -> PaymentStatus:
    status = STCPAY_STATUS_MAP.get((stcpay_status or "").upper())
    if status is None:
        logger.warning(f"Unknown or unmapped STCPay payment status: {stcpay_status}")
        return PaymentStatus.FAILED
    return status


def map_stcpay_refund_status(stcpay_status: str | None) -> PaymentStatus:
    status = STCPAY_REFUND_STATUS_MAP.get((stcpay_status or "").upper())
    if status is None:
        logger.warning(f"Unknown or unmapped STCPay refund status: {stcpay_status}")
        return PaymentStatus.FAILED
    return status


def generate_stcpay_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw webhook body."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _parse_amount(value) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class StcPayGateway(PaymentGateway):
    """STC Pay gateway implementation."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.api_url = settings.stcpay_api_url.rstrip("/")
        self.merchant_id = settings.stcpay_merchant_id
        self.api_key = settings.stcpay_api_key
        self.timeout = settings.gateway_timeout_seconds
        self.transport = transport

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.STCPAY

    async def _request(self, operation: str, method: str, path: str, body: dict | None = None) -> dict:
        if not self.merchant_id or not self.api_key:
            raise GatewayIntegrationError(GatewayType.STCPAY.value, "STCPay credentials not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "X-Merchant-Id": self.merchant_id,
        }
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.request(method, f"{self.api_url}{path}", headers=headers, json=body)
        except httpx.TimeoutException:
            logger.error(f"STCPay {operation} timed out after {self.timeout}s")
            raise GatewayIntegrationError(GatewayType.STCPAY.value, f"{operation} timed out")
        except httpx.HTTPError as e:
            logger.error(f"STCPay {operation} transport error: {e}")
            raise GatewayIntegrationError(GatewayType.STCPAY.value, str(e))

        if response.status_code >= 500:
            raise GatewayIntegrationError(
                GatewayType.STCPAY.value,
                f"{operation} returned {response.status_code}",
                raw_error={"status_code": response.status_code, "body": response.text[:500]},
            )
        try:
            data = response.json()
        except ValueError:
            raise GatewayIntegrationError(GatewayType.STCPAY.value, f"{operation} returned malformed JSON")
        if response.status_code >= 400:
            # Client errors carry a provider status we can map (e.g. DECLINED)
            data.setdefault("status", "FAILED")
        return data

    async def process_payment(self, charge: ChargeRequest) -> PaymentResult:
        data = await self._request(
            "charge",
            "POST",
            "/payments",
            {
                "amount": str(charge.amount),
                "currency": charge.currency,
                "customer_identifier": charge.payment_method_token,
                "merchant_ref_id": charge.reference_id,
                "description": charge.description,
                "metadata": {"merchant_id": charge.merchant_id, "order_id": charge.order_id, **charge.metadata},
            },
        )
        status = map_stcpay_status(data.get("status"))
        logger.info(f"STCPay charge {data.get('id')} status {data.get('status')}")
        return PaymentResult(
            status=status,
            transaction_id=data.get("id"),
            error_message=None if status != PaymentStatus.FAILED else data.get("message"),
            raw_response=data,
        )

    async def refund_payment(self, refund: RefundRequest) -> RefundResult:
        try:
            data = await self._request(
                "refund",
                "POST",
                "/refunds",
                {
                    "transaction_id": refund.provider_transaction_id,
                    "amount": str(refund.amount),
                    "currency": refund.currency,
                    "reason": refund.reason,
                },
            )
        except GatewayIntegrationError as e:
            raise RefundProcessingError(f"Error processing STCPay refund: {e.detail}")

        status = map_stcpay_refund_status(data.get("status"))
        return RefundResult(
            status=status,
            refund_id=data.get("id"),
            error_message=None if status != PaymentStatus.FAILED else data.get("message"),
            raw_response=data,
        )

    async def create_recurring_payment(self, request: RecurringRequest) -> RecurringPaymentDetails:
        """Request a recurring charge mandate (customer consent)."""
        try:
            data = await self._request(
                "create mandate",
                "POST",
                "/mandates",
                {
                    "customer_identifier": request.payment_method_token,
                    "merchant_id": request.merchant_id,
                    "plan_id": request.plan_id,
                    "amount": str(request.amount),
                    "currency": request.currency,
                    "interval": request.interval,
                    "interval_count": request.interval_count,
                },
            )
        except GatewayIntegrationError as e:
            raise SubscriptionManagementError(GatewayType.STCPAY.value, e.detail)
        if not data.get("id"):
            raise SubscriptionManagementError(GatewayType.STCPAY.value, data.get("message") or "Mandate was not created")
        return self._details(data, request)

    async def get_recurring_payment_details(self, provider_subscription_id: str) -> RecurringPaymentDetails:
        try:
            data = await self._request("fetch mandate", "GET", f"/mandates/{provider_subscription_id}")
        except GatewayIntegrationError as e:
            raise SubscriptionManagementError(GatewayType.STCPAY.value, e.detail)
        if not data.get("id"):
            raise SubscriptionManagementError(
                GatewayType.STCPAY.value, f"Mandate {provider_subscription_id} not found"
            )
        return self._details(data)

    async def cancel_recurring_payment(self, provider_subscription_id: str) -> None:
        try:
            data = await self._request("cancel mandate", "POST", f"/mandates/{provider_subscription_id}/cancel")
        except GatewayIntegrationError as e:
            raise SubscriptionManagementError(GatewayType.STCPAY.value, e.detail)
        if (data.get("status") or "").upper() not in ("CANCELLED", "REVOKED"):
            raise SubscriptionManagementError(
                GatewayType.STCPAY.value,
                f"Mandate {provider_subscription_id} cancel returned {data.get('status')}",
            )
        logger.info(f"STCPay mandate {provider_subscription_id} cancelled")

    async def retry_recurring_payment(self, request: RetryRequest) -> PaymentResult:
        data = await self._request(
            "mandate charge",
            "POST",
            f"/mandates/{request.provider_subscription_id}/charge",
            {
                "amount": str(request.amount),
                "currency": request.currency,
                "merchant_ref_id": request.reference_id,
            },
        )
        status = map_stcpay_status(data.get("status"))
        return PaymentResult(
            status=status,
            transaction_id=data.get("id"),
            error_message=None if status != PaymentStatus.FAILED else data.get("message"),
            raw_response=data,
        )

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str | None,
        secret: str,
    ) -> bool:
        if not signature or not secret:
            logger.error("Missing signature or secret for STCPay webhook verification")
            return False
        expected = generate_stcpay_signature(payload, secret)
        if not hmac.compare_digest(expected.encode(), signature.strip().lower().encode()):
            logger.warning("STCPay webhook signature verification failed")
            return False
        return True

    def parse_webhook_event(self, payload: bytes) -> WebhookEvent:
        event = json.loads(payload)
        return WebhookEvent(
            gateway=GatewayType.STCPAY,
            event_type=event.get("event_type") or event.get("type") or "unknown_stcpay_event",
            payload=event.get("data") or event,
            received_at=_parse_datetime(event.get("timestamp")) or datetime.now(UTC),
            event_id=event.get("id"),
        )

    def extract_outcome(self, event: WebhookEvent) -> WebhookOutcome | None:
        data = event.payload
        metadata = data.get("metadata") or {}
        event_type = event.event_type

        if event_type == "mandate.cancelled":
            return WebhookOutcome(
                provider_subscription_id=data.get("mandate_id") or data.get("id"),
                merchant_id=metadata.get("merchant_id"),
                subscription_cancelled=True,
            )

        if event_type.startswith("refund."):
            refund_status = map_stcpay_refund_status(data.get("status"))
            return WebhookOutcome(
                status=PaymentStatus.REFUNDED if refund_status == PaymentStatus.SUCCESSFUL else None,
                provider_transaction_id=data.get("original_transaction_id"),
                merchant_id=metadata.get("merchant_id"),
            )

        if not (event_type.startswith("payment.") or event_type.startswith("mandate.payment.")):
            return None

        return WebhookOutcome(
            status=map_stcpay_status(data.get("status")),
            provider_transaction_id=data.get("transaction_id") or data.get("id"),
            provider_subscription_id=data.get("mandate_id"),
            amount=_parse_amount(data.get("amount")),
            currency=(data.get("currency") or "SAR").upper(),
            merchant_id=metadata.get("merchant_id"),
            order_id=metadata.get("order_id"),
            error_message=data.get("message") if (data.get("status") or "").upper() in ("FAILED", "DECLINED") else None,
            period_start=_parse_datetime(data.get("period_start")),
            period_end=_parse_datetime(data.get("period_end")),
        )

    def _details(self, data: dict, request: RecurringRequest | None = None) -> RecurringPaymentDetails:
        plan_details = {
            "consent_reference": data.get("consent_reference"),
            "amount": data.get("amount"),
            "currency": data.get("currency"),
            "interval": data.get("interval"),
        }
        if request is not None:
            plan_details.update(
                {
                    "internal_plan_id": request.plan_id,
                    "amount": str(request.amount),
                    "currency": request.currency,
                    "interval": request.interval,
                    "interval_count": request.interval_count,
                }
            )
        return RecurringPaymentDetails(
            provider_subscription_id=data["id"],
            status=str(data.get("status") or "unknown").lower(),
            current_period_start=_parse_datetime(data.get("current_period_start")),
            current_period_end=_parse_datetime(data.get("next_billing_date")),
            plan_details=plan_details,
            raw_response=data,
        )
