"""Stripe payment gateway adapter.

The stripe SDK is synchronous; every call runs in a worker thread under a
bounded timeout. Stripe bills subscription renewals itself and reports them
through ``invoice.*`` webhooks.
"""

import asyncio
import json
import logging
from datetime import UTC, datetime
from decimal import Decimal

import stripe

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
from merchant_billing.utils.money import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)

PAYMENT_STATUS_MAP = {
    "succeeded": PaymentStatus.SUCCESSFUL,
    "paid": PaymentStatus.SUCCESSFUL,
    "processing": PaymentStatus.PENDING,
    "pending": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PENDING,
    "requires_payment_method": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
    "failed": PaymentStatus.FAILED,
}

# Webhook event type -> payment status it reports
EVENT_STATUS_MAP = {
    "charge.succeeded": PaymentStatus.SUCCESSFUL,
    "charge.failed": PaymentStatus.FAILED,
    "charge.pending": PaymentStatus.PENDING,
    "charge.refunded": PaymentStatus.REFUNDED,
    "payment_intent.succeeded": PaymentStatus.SUCCESSFUL,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.FAILED,
    "payment_intent.processing": PaymentStatus.PENDING,
    "invoice.paid": PaymentStatus.SUCCESSFUL,
    "invoice.payment_succeeded": PaymentStatus.SUCCESSFUL,
    "invoice.payment_failed": PaymentStatus.FAILED,
}


def map_stripe_status(stripe_status: str | None) -> PaymentStatus:
    status = PAYMENT_STATUS_MAP.get((stripe_status or "").lower())
    if status is None:
        logger.warning(f"Unknown or unmapped Stripe status: {stripe_status}")
        return PaymentStatus.FAILED
    return status


def _to_dict(obj) -> dict:
    return json.loads(str(obj))


def _timestamp(value) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


class StripeGateway(PaymentGateway):
    """Stripe payment gateway implementation."""

    def __init__(self, settings: Settings):
        self.secret_key = settings.stripe_secret_key
        self.webhook_tolerance = settings.stripe_webhook_tolerance_seconds
        self.timeout = settings.gateway_timeout_seconds

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.STRIPE

    @property
    def bills_renewals_automatically(self) -> bool:
        return True

    async def _call(self, operation: str, func, *args, **kwargs):
        """Run a blocking SDK call with the configured timeout."""
        if not self.secret_key:
            raise GatewayIntegrationError(GatewayType.STRIPE.value, "Stripe not configured")
        kwargs["api_key"] = self.secret_key
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Stripe {operation} timed out after {self.timeout}s")
            raise GatewayIntegrationError(GatewayType.STRIPE.value, f"{operation} timed out")

    async def process_payment(self, charge: ChargeRequest) -> PaymentResult:
        """Create and confirm a PaymentIntent off-session.

        A payment method attached to a customer can only be charged together
        with that customer.
        """
        extra = {"customer": charge.customer_id} if charge.customer_id else {}
        try:
            intent = await self._call(
                "charge",
                stripe.PaymentIntent.create,
                amount=to_minor_units(charge.amount, charge.currency),
                currency=charge.currency.lower(),
                payment_method=charge.payment_method_token,
                confirm=True,
                off_session=True,
                description=charge.description or None,
                metadata={
                    "reference_id": charge.reference_id,
                    "merchant_id": charge.merchant_id,
                    "order_id": charge.order_id or "",
                    **charge.metadata,
                },
                **extra,
            )
        except stripe.CardError as e:
            # Declines are outcomes, not integration failures
            intent = getattr(e.error, "payment_intent", None)
            return PaymentResult(
                status=PaymentStatus.FAILED,
                transaction_id=intent.get("id") if intent else None,
                error_message=e.user_message or str(e),
                raw_response={"code": e.code, "decline_code": getattr(e.error, "decline_code", None)},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe charge failed for {charge.reference_id}: {e}")
            raise GatewayIntegrationError(GatewayType.STRIPE.value, str(e), raw_error=getattr(e, "json_body", None))

        logger.info(f"Stripe charge {intent.id} status {intent.status}")
        return PaymentResult(
            status=map_stripe_status(intent.status),
            transaction_id=intent.id,
            raw_response={"id": intent.id, "status": intent.status},
        )

    async def refund_payment(self, refund: RefundRequest) -> RefundResult:
        """Refund a PaymentIntent in full or in part."""
        try:
            result = await self._call(
                "refund",
                stripe.Refund.create,
                payment_intent=refund.provider_transaction_id,
                amount=to_minor_units(refund.amount, refund.currency),
                reason="requested_by_customer",
                metadata={"reason": refund.reason[:500]},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe refund failed for {refund.provider_transaction_id}: {e}")
            raise RefundProcessingError(f"Error processing Stripe refund: {e}")

        return RefundResult(
            status=map_stripe_status(result.status),
            refund_id=result.id,
            raw_response={"id": result.id, "status": result.status},
        )

    async def create_recurring_payment(self, request: RecurringRequest) -> RecurringPaymentDetails:
        """Create a customer and a Stripe subscription for the plan price."""
        try:
            customer = await self._call(
                "create customer",
                stripe.Customer.create,
                payment_method=request.payment_method_token,
                invoice_settings={"default_payment_method": request.payment_method_token},
                metadata={"merchant_id": request.merchant_id},
            )
            price_id = request.provider_price_id
            if not price_id:
                price = await self._call(
                    "create price",
                    stripe.Price.create,
                    unit_amount=to_minor_units(request.amount, request.currency),
                    currency=request.currency.lower(),
                    recurring={"interval": request.interval, "interval_count": request.interval_count},
                    product_data={"name": request.plan_id},
                )
                price_id = price.id
            subscription = await self._call(
                "create subscription",
                stripe.Subscription.create,
                customer=customer.id,
                items=[{"price": price_id}],
                metadata={"merchant_id": request.merchant_id, "plan_id": request.plan_id, **request.metadata},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe subscription setup failed for merchant {request.merchant_id}: {e}")
            raise SubscriptionManagementError(GatewayType.STRIPE.value, str(e))

        return self._details(subscription)

    async def get_recurring_payment_details(self, provider_subscription_id: str) -> RecurringPaymentDetails:
        try:
            subscription = await self._call(
                "retrieve subscription",
                stripe.Subscription.retrieve,
                provider_subscription_id,
            )
        except stripe.StripeError as e:
            raise SubscriptionManagementError(GatewayType.STRIPE.value, str(e))
        return self._details(subscription)

    async def cancel_recurring_payment(self, provider_subscription_id: str) -> None:
        try:
            await self._call("cancel subscription", stripe.Subscription.cancel, provider_subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe cancellation failed for {provider_subscription_id}: {e}")
            raise SubscriptionManagementError(GatewayType.STRIPE.value, str(e))
        logger.info(f"Stripe subscription {provider_subscription_id} cancelled")

    async def retry_recurring_payment(self, request: RetryRequest) -> PaymentResult:
        """Pay the subscription's latest open invoice."""
        try:
            subscription = await self._call(
                "retrieve subscription",
                stripe.Subscription.retrieve,
                request.provider_subscription_id,
                expand=["latest_invoice"],
            )
            invoice = subscription.latest_invoice
            if invoice is None or invoice.status == "paid":
                return PaymentResult(
                    status=PaymentStatus.SUCCESSFUL if invoice else PaymentStatus.FAILED,
                    transaction_id=invoice.get("payment_intent") if invoice else None,
                    error_message=None if invoice else "No invoice to retry",
                    raw_response={"invoice": invoice.id if invoice else None},
                )
            invoice = await self._call("pay invoice", stripe.Invoice.pay, invoice.id)
        except stripe.CardError as e:
            return PaymentResult(
                status=PaymentStatus.FAILED,
                error_message=e.user_message or str(e),
                raw_response={"code": e.code},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe retry failed for {request.provider_subscription_id}: {e}")
            raise GatewayIntegrationError(GatewayType.STRIPE.value, str(e))

        return PaymentResult(
            status=map_stripe_status(invoice.status),
            transaction_id=invoice.get("payment_intent") or invoice.id,
            raw_response={"invoice": invoice.id, "status": invoice.status},
        )

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str | None,
        secret: str,
    ) -> bool:
        """Verify the ``Stripe-Signature`` header (timestamped HMAC-SHA256)."""
        if not signature or not secret:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                secret,
                tolerance=self.webhook_tolerance,
            )
        except (stripe.SignatureVerificationError, ValueError):
            logger.warning("Stripe webhook signature verification failed")
            return False
        return True

    def parse_webhook_event(self, payload: bytes) -> WebhookEvent:
        data = json.loads(payload)
        return WebhookEvent(
            gateway=GatewayType.STRIPE,
            event_type=data.get("type", "unknown_stripe_event"),
            payload=data.get("data", {}).get("object", {}),
            received_at=_timestamp(data.get("created")) or datetime.now(UTC),
            event_id=data.get("id"),
        )

    def extract_outcome(self, event: WebhookEvent) -> WebhookOutcome | None:
        obj = event.payload
        event_type = event.event_type

        if event_type == "customer.subscription.deleted":
            return WebhookOutcome(
                provider_subscription_id=obj.get("id"),
                merchant_id=(obj.get("metadata") or {}).get("merchant_id"),
                subscription_cancelled=True,
            )

        status = EVENT_STATUS_MAP.get(event_type)
        if status is None:
            return None

        currency = (obj.get("currency") or "usd").upper()
        metadata = obj.get("metadata") or {}

        if event_type.startswith("invoice."):
            lines = (obj.get("lines") or {}).get("data") or []
            period = lines[0].get("period", {}) if lines else {}
            subscription_metadata = (obj.get("subscription_details") or {}).get("metadata") or {}
            minor = obj.get("amount_paid") if status == PaymentStatus.SUCCESSFUL else obj.get("amount_due")
            return WebhookOutcome(
                status=status,
                provider_transaction_id=obj.get("payment_intent") or obj.get("id"),
                provider_subscription_id=obj.get("subscription"),
                amount=from_minor_units(minor, currency) if minor is not None else None,
                currency=currency,
                merchant_id=subscription_metadata.get("merchant_id") or metadata.get("merchant_id"),
                error_message=(obj.get("last_finalization_error") or {}).get("message"),
                period_start=_timestamp(period.get("start")),
                period_end=_timestamp(period.get("end")),
            )

        if event_type.startswith("charge."):
            txn_id = obj.get("payment_intent") or obj.get("id")
            error = obj.get("failure_message")
        else:
            txn_id = obj.get("id")
            error = (obj.get("last_payment_error") or {}).get("message")

        minor = obj.get("amount")
        return WebhookOutcome(
            status=status,
            provider_transaction_id=txn_id,
            amount=from_minor_units(minor, currency) if minor is not None else None,
            currency=currency,
            merchant_id=metadata.get("merchant_id"),
            order_id=metadata.get("order_id") or None,
            error_message=error,
        )

    def _details(self, subscription) -> RecurringPaymentDetails:
        data = _to_dict(subscription)
        items = (data.get("items") or {}).get("data") or []
        price = items[0].get("price", {}) if items else {}
        customer = data.get("customer")
        # Newer API versions carry the period on the subscription item
        period_source = items[0] if items and "current_period_start" in items[0] else data
        return RecurringPaymentDetails(
            provider_subscription_id=data["id"],
            status=data.get("status", "unknown"),
            current_period_start=_timestamp(period_source.get("current_period_start")),
            current_period_end=_timestamp(period_source.get("current_period_end")),
            plan_details={
                "price_id": price.get("id"),
                "amount": str(from_minor_units(price["unit_amount"], price.get("currency", "usd")))
                if price.get("unit_amount") is not None
                else None,
                "currency": (price.get("currency") or "").upper() or None,
                "interval": (price.get("recurring") or {}).get("interval"),
                "customer_id": customer.get("id") if isinstance(customer, dict) else customer,
            },
            raw_response={"id": data["id"], "status": data.get("status")},
        )
