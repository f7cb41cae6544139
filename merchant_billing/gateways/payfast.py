"""PayFast payment gateway adapter.

Recurring billing uses PayFast tokenization: the payment-method token is a
PayFast subscription/ad-hoc token which we charge ourselves on each renewal.
Documentation: https://developers.payfast.co.za/docs
"""

import hashlib
import hmac
import logging
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from urllib.parse import parse_qsl, urlencode

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
from merchant_billing.utils.money import to_minor_units

logger = logging.getLogger(__name__)

PAYFAST_STATUS_MAP = {
    "COMPLETE": PaymentStatus.SUCCESSFUL,
    "SUCCESS": PaymentStatus.SUCCESSFUL,
    "PENDING": PaymentStatus.PENDING,
    "FAILED": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.FAILED,
}


def map_payfast_status(payfast_status: str | None) -> PaymentStatus:
    status = PAYFAST_STATUS_MAP.get((payfast_status or "").upper())
    if status is None:
        logger.warning(f"Unknown or unmapped PayFast status: {payfast_status}")
        return PaymentStatus.FAILED
    return status


class PayFastGateway(PaymentGateway):
    """PayFast payment gateway implementation."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.merchant_id = settings.payfast_merchant_id
        self.merchant_key = settings.payfast_merchant_key
        self.passphrase = settings.payfast_passphrase
        self.sandbox = settings.payfast_sandbox
        self.timeout = settings.gateway_timeout_seconds
        self.transport = transport

        # Environment safety: force sandbox in non-production
        if settings.environment != "production":
            self.sandbox = True

        self.api_url = "https://api.payfast.co.za"

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.PAYFAST

    def _generate_signature(
        self,
        data: dict,
        passphrase: str | None = None,
        sort: bool = True,
        skip_blank: bool = True,
    ) -> str:
        """Generate PayFast MD5 signature for a parameter set."""
        items = sorted(data.items()) if sort else list(data.items())
        if skip_blank:
            items = [(k, v) for k, v in items if v is not None and v != ""]
        param_string = urlencode([(k, str(v).strip()) for k, v in items])

        if passphrase:
            param_string += f"&{urlencode({'passphrase': passphrase.strip()})}"

        return hashlib.md5(param_string.encode()).hexdigest()

    def _headers(self, body: dict) -> dict:
        timestamp = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S+00:00")
        headers = {
            "merchant-id": self.merchant_id,
            "version": "v1",
            "timestamp": timestamp,
        }
        # API signatures cover headers, body and passphrase, all sorted
        signed = {**headers, **body}
        if self.passphrase:
            signed["passphrase"] = self.passphrase
        headers["signature"] = self._generate_signature(signed)
        return headers

    async def _request(self, operation: str, method: str, path: str, body: dict | None = None) -> dict:
        if not self.merchant_id or not self.passphrase:
            raise GatewayIntegrationError(GatewayType.PAYFAST.value, "PayFast credentials not configured")

        body = body or {}
        params = {"testing": "true"} if self.sandbox else None
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.request(
                    method,
                    f"{self.api_url}{path}",
                    headers=self._headers(body),
                    params=params,
                    json=body or None,
                )
        except httpx.TimeoutException:
            logger.error(f"PayFast {operation} timed out after {self.timeout}s")
            raise GatewayIntegrationError(GatewayType.PAYFAST.value, f"{operation} timed out")
        except httpx.HTTPError as e:
            logger.error(f"PayFast {operation} transport error: {e}")
            raise GatewayIntegrationError(GatewayType.PAYFAST.value, str(e))

        if response.status_code >= 500:
            raise GatewayIntegrationError(
                GatewayType.PAYFAST.value,
                f"{operation} returned {response.status_code}",
                raw_error={"status_code": response.status_code},
            )
        try:
            data = response.json()
        except ValueError:
            raise GatewayIntegrationError(GatewayType.PAYFAST.value, f"{operation} returned malformed JSON")
        data["http_status"] = response.status_code
        return data

    async def process_payment(self, charge: ChargeRequest) -> PaymentResult:
        """Ad-hoc charge against a stored PayFast token."""
        data = await self._request(
            "charge",
            "POST",
            f"/subscriptions/{charge.payment_method_token}/adhoc",
            {
                "amount": to_minor_units(charge.amount, charge.currency),
                "item_name": (charge.description or charge.reference_id)[:100],
                "m_payment_id": charge.reference_id,
            },
        )
        return self._payment_result(data)

    async def retry_recurring_payment(self, request: RetryRequest) -> PaymentResult:
        """Re-charge the subscription token ad hoc."""
        data = await self._request(
            "retry",
            "POST",
            f"/subscriptions/{request.provider_subscription_id}/adhoc",
            {
                "amount": to_minor_units(request.amount, request.currency),
                "item_name": "Subscription payment retry",
                "m_payment_id": request.reference_id or request.provider_subscription_id,
            },
        )
        return self._payment_result(data)

    async def refund_payment(self, refund: RefundRequest) -> RefundResult:
        try:
            data = await self._request(
                "refund",
                "POST",
                f"/refunds/{refund.provider_transaction_id}",
                {
                    "amount": to_minor_units(refund.amount, refund.currency),
                    "reason": refund.reason[:255],
                },
            )
        except GatewayIntegrationError as e:
            raise RefundProcessingError(f"Error processing PayFast refund: {e.detail}")

        payload = data.get("data") or {}
        status = PaymentStatus.SUCCESSFUL if data.get("status") == "success" else PaymentStatus.FAILED
        return RefundResult(
            status=status,
            refund_id=str(payload.get("refund_id") or f"refund_{refund.provider_transaction_id}"),
            error_message=None if status == PaymentStatus.SUCCESSFUL else payload.get("message"),
            raw_response=data,
        )

    async def create_recurring_payment(self, request: RecurringRequest) -> RecurringPaymentDetails:
        """Adopt an existing tokenization as the recurring mandate.

        PayFast tokens are created through the hosted checkout; here we
        confirm the token is live and use it as the subscription id.
        """
        details = await self.get_recurring_payment_details(request.payment_method_token)
        details.plan_details.update(
            {
                "internal_plan_id": request.plan_id,
                "amount": str(request.amount),
                "currency": request.currency,
                "interval": request.interval,
                "interval_count": request.interval_count,
            }
        )
        return details

    async def get_recurring_payment_details(self, provider_subscription_id: str) -> RecurringPaymentDetails:
        try:
            data = await self._request("fetch subscription", "GET", f"/subscriptions/{provider_subscription_id}/fetch")
        except GatewayIntegrationError as e:
            raise SubscriptionManagementError(GatewayType.PAYFAST.value, e.detail)

        if data.get("http_status") != 200:
            raise SubscriptionManagementError(
                GatewayType.PAYFAST.value,
                f"Subscription {provider_subscription_id} lookup returned {data.get('http_status')}",
            )
        payload = (data.get("data") or {}).get("response") or {}
        run_date = payload.get("run_date")
        return RecurringPaymentDetails(
            provider_subscription_id=provider_subscription_id,
            status=str(payload.get("status_text") or payload.get("status") or "unknown").lower(),
            current_period_end=datetime.fromisoformat(run_date) if run_date else None,
            plan_details={"amount_minor": payload.get("amount"), "cycles": payload.get("cycles")},
            raw_response=payload,
        )

    async def cancel_recurring_payment(self, provider_subscription_id: str) -> None:
        try:
            data = await self._request("cancel subscription", "PUT", f"/subscriptions/{provider_subscription_id}/cancel")
        except GatewayIntegrationError as e:
            raise SubscriptionManagementError(GatewayType.PAYFAST.value, e.detail)
        if data.get("http_status") != 200:
            raise SubscriptionManagementError(
                GatewayType.PAYFAST.value,
                f"Cancel of {provider_subscription_id} returned {data.get('http_status')}",
            )
        logger.info(f"PayFast subscription {provider_subscription_id} cancelled")

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str | None,
        secret: str,
    ) -> bool:
        """Verify a PayFast ITN (Instant Transaction Notification).

        PayFast posts the signature inside the form body; ``secret`` is the
        merchant passphrase. Fields are signed in the order received.
        """
        if not secret:
            return False
        try:
            data = dict(parse_qsl(payload.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError:
            return False

        received_signature = data.pop("signature", None) or signature
        if not received_signature:
            return False

        expected_signature = self._generate_signature(data, passphrase=secret, sort=False, skip_blank=False)
        if not hmac.compare_digest(received_signature.lower().encode(), expected_signature.encode()):
            logger.warning("PayFast ITN signature verification failed")
            return False
        return True

    def parse_webhook_event(self, payload: bytes) -> WebhookEvent:
        data = dict(parse_qsl(payload.decode("utf-8"), keep_blank_values=True))
        data.pop("signature", None)
        payment_status = (data.get("payment_status") or "unknown").lower()
        if data.get("token"):
            event_type = "subscription.cancelled" if payment_status == "cancelled" else f"subscription.payment.{payment_status}"
        else:
            event_type = f"payment.{payment_status}"
        return WebhookEvent(
            gateway=GatewayType.PAYFAST,
            event_type=event_type,
            payload=data,
            event_id=data.get("pf_payment_id"),
        )

    def extract_outcome(self, event: WebhookEvent) -> WebhookOutcome | None:
        data = event.payload
        token = data.get("token") or None

        if event.event_type == "subscription.cancelled":
            return WebhookOutcome(
                provider_subscription_id=token,
                merchant_id=data.get("custom_str1") or None,
                subscription_cancelled=True,
            )

        try:
            amount = Decimal(data["amount_gross"]) if data.get("amount_gross") else None
        except InvalidOperation:
            amount = None

        return WebhookOutcome(
            status=map_payfast_status(data.get("payment_status")),
            provider_transaction_id=data.get("pf_payment_id") or None,
            provider_subscription_id=token,
            amount=amount,
            currency="ZAR",
            merchant_id=data.get("custom_str1") or None,
            order_id=data.get("custom_str2") or None,
            error_message=data.get("reason") or None,
        )

    def _payment_result(self, data: dict) -> PaymentResult:
        payload = data.get("data") or {}
        if data.get("http_status") == 200 and payload.get("response") is True:
            status = PaymentStatus.SUCCESSFUL
        elif data.get("http_status") == 200:
            status = map_payfast_status(payload.get("payment_status") or payload.get("status"))
        else:
            status = PaymentStatus.FAILED
        return PaymentResult(
            status=status,
            transaction_id=str(payload["pf_payment_id"]) if payload.get("pf_payment_id") else None,
            error_message=None if status == PaymentStatus.SUCCESSFUL else payload.get("message"),
            raw_response=data,
        )
