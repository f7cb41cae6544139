"""Webhook entrypoint: verify, parse, route, record, hand off.

Only verification, parsing and the ledger write happen while the provider
waits. Applying the outcome to the subscription (and dunning on failure) is
handed to a dispatcher, by default the ``process_webhook_outcome`` Celery task.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from merchant_billing.core.exceptions import (
    ConfigurationError,
    UnsupportedGatewayError,
    ValidationError,
    WebhookVerificationError,
)
from merchant_billing.gateways.base import GatewayType, WebhookEvent, WebhookOutcome
from merchant_billing.services.gateway_service import GatewayService
from merchant_billing.services.payment_service import LedgerChange, PaymentService
from merchant_billing.services.recurring_billing_service import RecurringBillingService

logger = logging.getLogger(__name__)

ROUTE_PAYMENT = "payment"
ROUTE_SUBSCRIPTION = "subscription"

# Event type prefix -> handler, checked in order
EVENT_ROUTES: dict[GatewayType, tuple[tuple[str, str], ...]] = {
    GatewayType.STRIPE: (
        ("charge.", ROUTE_PAYMENT),
        ("payment_intent.", ROUTE_PAYMENT),
        ("customer.subscription.", ROUTE_SUBSCRIPTION),
        ("invoice.", ROUTE_SUBSCRIPTION),
    ),
    GatewayType.PAYFAST: (
        ("payment.", ROUTE_PAYMENT),
        ("subscription.", ROUTE_SUBSCRIPTION),
    ),
    GatewayType.STCPAY: (
        ("payment.", ROUTE_PAYMENT),
        ("refund.", ROUTE_PAYMENT),
        ("mandate.", ROUTE_SUBSCRIPTION),
    ),
}

Dispatcher = Callable[[str, dict[str, Any]], None]


def celery_dispatcher(provider: str, outcome: dict[str, Any]) -> None:
    """Queue the follow-up on the Celery worker."""
    from merchant_billing.tasks import process_webhook_outcome

    process_webhook_outcome.delay(provider, outcome)


def route_event(event: WebhookEvent) -> str | None:
    for prefix, route in EVENT_ROUTES.get(event.gateway, ()):
        if event.event_type.startswith(prefix):
            return route
    return None


@dataclass
class WebhookReceipt:
    """What the entrypoint did with one delivery."""

    provider: str
    event_type: str
    event_id: str | None = None
    route: str | None = None
    ledger_entry_id: str | None = None
    dispatched: bool = False


class WebhookService:
    """Verifies and routes provider notifications."""

    def __init__(
        self,
        gateways: GatewayService,
        payments: PaymentService,
        recurring: RecurringBillingService,
        dispatcher: Dispatcher | None = None,
    ):
        self.gateways = gateways
        self.payments = payments
        self.recurring = recurring
        self.dispatcher = dispatcher or celery_dispatcher

    def verify_and_parse(self, provider: str, payload: bytes, signature: str | None) -> WebhookEvent:
        """Check the signature against the configured secret, then parse.

        Raises:
            ConfigurationError: Provider disabled or unknown, or secret missing
            WebhookVerificationError: Signature rejected
            ValidationError: Verified body is not a parsable event
        """
        try:
            gateway = self.gateways.get_gateway(provider)
        except UnsupportedGatewayError as e:
            raise ConfigurationError(f"Webhooks for '{e.gateway}' are not enabled")

        secret = self.gateways.get_webhook_secret(gateway.gateway_type)
        if not secret:
            raise ConfigurationError(f"Webhook secret for '{gateway.gateway_type.value}' is not configured")

        if not gateway.verify_webhook_signature(payload, signature, secret):
            logger.warning(f"Rejected {gateway.gateway_type.value} webhook with invalid signature")
            raise WebhookVerificationError()

        try:
            return gateway.parse_webhook_event(payload)
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Verified {gateway.gateway_type.value} webhook could not be parsed: {e}")
            raise ValidationError("Malformed webhook payload")

    async def handle(self, provider: str, payload: bytes, signature: str | None) -> WebhookReceipt:
        event = self.verify_and_parse(provider, payload, signature)
        gateway = self.gateways.get_gateway(event.gateway)
        outcome = gateway.extract_outcome(event)
        route = route_event(event)

        receipt = WebhookReceipt(
            provider=event.gateway.value,
            event_type=event.event_type,
            event_id=event.event_id,
            route=route,
        )
        logger.info(f"Webhook {event.gateway.value} {event.event_type} ({event.event_id}) -> {route or 'ignored'}")

        change: LedgerChange | None = None
        if route == ROUTE_PAYMENT:
            change = await self.payments.handle_webhook_payment_event(event, outcome)
        elif route == ROUTE_SUBSCRIPTION:
            change = await self.recurring.handle_webhook_subscription_event(event, outcome)

        if change is not None:
            receipt.ledger_entry_id = str(change.entry.id)

        if self._needs_follow_up(outcome, change):
            self.dispatcher(event.gateway.value, outcome.to_dict())
            receipt.dispatched = True

        return receipt

    @staticmethod
    def _needs_follow_up(outcome: WebhookOutcome | None, change: LedgerChange | None) -> bool:
        if outcome is None or not outcome.provider_subscription_id:
            return False
        if outcome.subscription_cancelled:
            return True
        # Replays leave the ledger unchanged and must not reach the state machine again
        return change is not None and change.status_changed
