"""One-time payments: sales, refunds and payment webhooks.

Foreground flow: ledger (pending) -> gateway -> ledger (outcome).
No ledger row is written for requests that fail basic validation.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from merchant_billing.core.exceptions import (
    GatewayIntegrationError,
    PaymentProcessingError,
    RefundProcessingError,
    ValidationError,
)
from merchant_billing.domain.payment_state import PaymentStatus, TransactionType, is_redundant_update
from merchant_billing.gateways.base import ChargeRequest, RefundRequest, WebhookEvent, WebhookOutcome
from merchant_billing.models.transaction_log import TransactionLog
from merchant_billing.services.gateway_service import GatewayService
from merchant_billing.services.ledger_service import LedgerService
from merchant_billing.utils.money import assert_valid_amount, quantize_amount

logger = logging.getLogger(__name__)


@dataclass
class ChargeOutcome:
    """Ledger row of a charge attempt and the gateway error, if one occurred."""

    entry: TransactionLog
    gateway_error: GatewayIntegrationError | None = None

    @property
    def succeeded(self) -> bool:
        return self.entry.status == PaymentStatus.SUCCESSFUL.value


@dataclass
class LedgerChange:
    """Ledger row touched by a webhook and the status it held before."""

    entry: TransactionLog
    previous_status: str | None = None

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.entry.status


def _error_response(exc: GatewayIntegrationError) -> dict:
    return {"error": exc.detail, "gateway_error": exc.raw_error} if exc.raw_error else {"error": exc.detail}


class PaymentService:
    """Charges, refunds and one-time payment webhook reconciliation."""

    def __init__(self, ledger: LedgerService, gateways: GatewayService):
        self.ledger = ledger
        self.gateways = gateways

    async def charge(
        self,
        merchant_id: str,
        provider: str,
        amount: Decimal,
        currency: str,
        payment_method_token: str,
        transaction_type: TransactionType,
        order_id: str | None = None,
        provider_subscription_id: str | None = None,
        description: str = "",
        metadata: dict[str, str] | None = None,
        now: datetime | None = None,
        customer_id: str | None = None,
    ) -> ChargeOutcome:
        """Run one charge attempt through the ledger and the gateway.

        Gateway errors are recorded as a Failed row and returned in the
        outcome rather than raised.

        Raises:
            ValidationError: Bad amount or currency (no row written)
            UnsupportedGatewayError: Provider disabled or unknown (no row written)
        """
        assert_valid_amount(amount, currency)
        gateway = self.gateways.get_gateway(provider)
        amount = quantize_amount(amount, currency)

        entry = await self.ledger.create_log(
            merchant_id=merchant_id,
            provider=gateway.gateway_type.value,
            amount=amount,
            currency=currency,
            transaction_type=transaction_type,
            order_id=order_id,
            provider_subscription_id=provider_subscription_id,
            provider_response={"description": description} if description else None,
            now=now,
        )

        try:
            result = await gateway.process_payment(
                ChargeRequest(
                    amount=amount,
                    currency=currency.upper(),
                    payment_method_token=payment_method_token,
                    merchant_id=merchant_id,
                    reference_id=str(entry.id),
                    description=description,
                    order_id=order_id,
                    metadata=metadata or {},
                    customer_id=customer_id,
                )
            )
        except GatewayIntegrationError as e:
            logger.error(f"Charge {entry.id} via {provider} failed: {e.detail}")
            entry = await self.ledger.update_status(
                entry.id,
                PaymentStatus.FAILED,
                provider_response=_error_response(e),
                error_message=e.detail,
            )
            return ChargeOutcome(entry=entry, gateway_error=e)

        entry = await self.ledger.update_status(
            entry.id,
            result.status,
            provider_response=result.raw_response,
            error_message=result.error_message if result.status == PaymentStatus.FAILED else None,
            provider_transaction_id=result.transaction_id,
        )
        logger.info(f"Charge {entry.id} via {provider} -> {entry.status}")
        return ChargeOutcome(entry=entry)

    async def process_sale(
        self,
        merchant_id: str,
        provider: str,
        amount: Decimal,
        currency: str,
        payment_method_token: str,
        order_id: str | None = None,
        description: str = "",
        metadata: dict[str, str] | None = None,
    ) -> TransactionLog:
        """Charge a one-time merchant sale.

        A decline returns the Failed row; a gateway error raises.

        Raises:
            PaymentProcessingError: If the gateway could not be reached
        """
        logger.info(f"Initiating sale for order {order_id} of merchant {merchant_id} via {provider}")
        outcome = await self.charge(
            merchant_id=merchant_id,
            provider=provider,
            amount=amount,
            currency=currency,
            payment_method_token=payment_method_token,
            transaction_type=TransactionType.SALE,
            order_id=order_id,
            description=description,
            metadata=metadata,
        )
        if outcome.gateway_error is not None:
            raise PaymentProcessingError(f"Payment processing failed: {outcome.gateway_error.detail}")
        return outcome.entry

    async def refund_sale(
        self,
        provider: str,
        provider_transaction_id: str,
        amount: Decimal | None = None,
        reason: str = "requested_by_customer",
    ) -> TransactionLog:
        """Refund all or part of a successful sale.

        Raises:
            ValidationError: Original missing, not refundable, or amount too large
            RefundProcessingError: If the gateway rejected or failed the refund
        """
        gateway = self.gateways.get_gateway(provider)
        original = await self.ledger.find_by_provider_transaction_id(
            gateway.gateway_type.value, provider_transaction_id
        )
        if original is None or original.transaction_type == TransactionType.REFUND.value:
            raise ValidationError(f"Original transaction {provider_transaction_id} not found for refund")
        if original.status != PaymentStatus.SUCCESSFUL.value:
            raise ValidationError(
                f"Transaction {provider_transaction_id} is {original.status} and cannot be refunded"
            )

        refund_amount = quantize_amount(amount if amount is not None else Decimal(original.amount), original.currency)
        assert_valid_amount(refund_amount, original.currency)
        if refund_amount > Decimal(original.amount):
            raise ValidationError(f"Refund amount {refund_amount} exceeds original amount {original.amount}")

        entry = await self.ledger.create_log(
            merchant_id=original.merchant_id,
            provider=original.provider,
            amount=refund_amount,
            currency=original.currency,
            transaction_type=TransactionType.REFUND,
            order_id=original.order_id,
            provider_subscription_id=original.provider_subscription_id,
            provider_response={"original_transaction_id": provider_transaction_id, "reason": reason},
        )

        try:
            result = await gateway.refund_payment(
                RefundRequest(
                    provider_transaction_id=provider_transaction_id,
                    amount=refund_amount,
                    currency=original.currency,
                    reason=reason,
                )
            )
        except (GatewayIntegrationError, RefundProcessingError) as e:
            logger.error(f"Refund {entry.id} of {provider_transaction_id} failed: {e.detail}")
            await self.ledger.update_status(
                entry.id,
                PaymentStatus.FAILED,
                provider_response={"original_transaction_id": provider_transaction_id, "error": e.detail},
                error_message=e.detail,
            )
            raise RefundProcessingError(f"Refund processing failed: {e.detail}")

        entry = await self.ledger.update_status(
            entry.id,
            result.status,
            provider_response={"original_transaction_id": provider_transaction_id, **(result.raw_response or {})},
            error_message=result.error_message if result.status == PaymentStatus.FAILED else None,
            provider_transaction_id=result.refund_id,
        )

        if result.status == PaymentStatus.SUCCESSFUL:
            await self.ledger.update_status(original.id, PaymentStatus.REFUNDED)
            logger.info(f"Original payment log {original.id} marked as refunded")
        elif result.status == PaymentStatus.FAILED:
            raise RefundProcessingError(f"Refund rejected: {result.error_message or 'unknown reason'}")

        return entry

    async def handle_webhook_payment_event(
        self,
        event: WebhookEvent,
        outcome: WebhookOutcome | None,
    ) -> LedgerChange | None:
        """Reconcile a one-time payment webhook against the ledger.

        Returns the mutated or created row, or None when the event was a
        duplicate or could not be recorded.
        """
        if outcome is None or outcome.status is None:
            logger.debug(f"Ignoring {event.gateway.value} event {event.event_type} for payment handling")
            return None
        if not outcome.provider_transaction_id:
            logger.warning(f"{event.gateway.value} event {event.event_type} has no transaction id; skipping")
            return None

        provider = event.gateway.value
        response = {"event_type": event.event_type, "event_id": event.event_id}
        existing = await self.ledger.find_by_provider_transaction_id(provider, outcome.provider_transaction_id)

        if existing is not None:
            if is_redundant_update(existing.status, outcome.status):
                logger.info(
                    f"Duplicate {event.event_type} for {provider}/{outcome.provider_transaction_id}; "
                    f"log {existing.id} already {existing.status}"
                )
                return None
            previous = existing.status
            entry = await self.ledger.update_status(
                existing.id,
                outcome.status,
                provider_response=response,
                error_message=outcome.error_message,
            )
            return LedgerChange(entry=entry, previous_status=previous)

        if outcome.amount is None or not outcome.currency or not outcome.merchant_id:
            logger.warning(
                f"Cannot record {event.event_type} for unknown transaction {provider}/"
                f"{outcome.provider_transaction_id}: amount, currency or merchant id missing"
            )
            return None

        entry = await self.ledger.create_log(
            merchant_id=outcome.merchant_id,
            provider=provider,
            amount=outcome.amount,
            currency=outcome.currency,
            transaction_type=TransactionType.CHARGE,
            order_id=outcome.order_id,
            provider_subscription_id=outcome.provider_subscription_id,
            status=outcome.status,
            provider_transaction_id=outcome.provider_transaction_id,
            provider_response=response,
            error_message=outcome.error_message,
        )
        return LedgerChange(entry=entry)
