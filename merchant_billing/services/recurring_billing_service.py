"""Provider-side recurring mandates and their webhook bookkeeping."""

import logging
from datetime import datetime

from merchant_billing.config import Settings, settings
from merchant_billing.core.exceptions import (
    ConfigurationError,
    GatewayIntegrationError,
    SubscriptionManagementError,
)
from merchant_billing.domain.dunning import DunningDecision, DunningParameters
from merchant_billing.domain.payment_state import PaymentStatus, TransactionType, is_redundant_update
from merchant_billing.gateways.base import RecurringPaymentDetails, RecurringRequest, WebhookEvent, WebhookOutcome
from merchant_billing.services.dunning_service import DunningService
from merchant_billing.services.gateway_service import GatewayService
from merchant_billing.services.ledger_service import LedgerService
from merchant_billing.services.payment_service import LedgerChange

logger = logging.getLogger(__name__)


class RecurringBillingService:
    """Mandate setup, lookup and cancellation, plus renewal webhook logging."""

    def __init__(
        self,
        ledger: LedgerService,
        gateways: GatewayService,
        dunning: DunningService | None = None,
        config: Settings | None = None,
    ):
        self.ledger = ledger
        self.gateways = gateways
        self.dunning = dunning
        self.config = config or settings
        if not self.config.enable_recurring_billing:
            logger.warning("Recurring billing for merchant products is disabled per configuration")

    def _ensure_enabled(self) -> None:
        if not self.config.enable_recurring_billing:
            raise ConfigurationError("Recurring billing is currently disabled")

    async def setup_recurring_payment(self, provider: str, request: RecurringRequest) -> RecurringPaymentDetails:
        """Create a mandate at the provider.

        Raises:
            ConfigurationError: Recurring billing is disabled
            SubscriptionManagementError: Provider rejected the setup
        """
        self._ensure_enabled()
        logger.info(f"Setting up recurring payment for merchant {request.merchant_id} via {provider}")
        gateway = self.gateways.get_gateway(provider)
        try:
            details = await gateway.create_recurring_payment(request)
        except SubscriptionManagementError:
            raise
        except GatewayIntegrationError as e:
            raise SubscriptionManagementError(gateway.gateway_type.value, f"Setup failed: {e.detail}")
        logger.info(f"Recurring payment setup successful for mandate {details.provider_subscription_id}")
        return details

    async def get_recurring_payment_details(
        self, provider: str, provider_subscription_id: str
    ) -> RecurringPaymentDetails:
        self._ensure_enabled()
        gateway = self.gateways.get_gateway(provider)
        try:
            details = await gateway.get_recurring_payment_details(provider_subscription_id)
        except SubscriptionManagementError:
            raise
        except GatewayIntegrationError as e:
            raise SubscriptionManagementError(gateway.gateway_type.value, f"Retrieval failed: {e.detail}")
        logger.debug(f"Mandate {provider_subscription_id} status: {details.status}")
        return details

    async def cancel_recurring_payment(self, provider: str, provider_subscription_id: str) -> None:
        self._ensure_enabled()
        logger.info(f"Cancelling recurring payment {provider_subscription_id} via {provider}")
        gateway = self.gateways.get_gateway(provider)
        try:
            await gateway.cancel_recurring_payment(provider_subscription_id)
        except SubscriptionManagementError:
            raise
        except GatewayIntegrationError as e:
            raise SubscriptionManagementError(gateway.gateway_type.value, f"Cancellation failed: {e.detail}")

    async def handle_webhook_subscription_event(
        self,
        event: WebhookEvent,
        outcome: WebhookOutcome | None,
    ) -> LedgerChange | None:
        """Record a renewal charge reported by webhook.

        Lookup is by provider transaction id. Without one, the newest pending
        renewal row for the mandate is resolved instead. The merchant id is
        recovered from earlier rows of the same mandate when the event lacks it.
        """
        if not self.config.enable_recurring_billing:
            logger.debug(f"Recurring billing disabled; ignoring {event.gateway.value} {event.event_type}")
            return None
        if outcome is None or outcome.status is None or not outcome.provider_subscription_id:
            logger.debug(f"No recurring payment outcome in {event.gateway.value} {event.event_type}")
            return None

        provider = event.gateway.value
        psid = outcome.provider_subscription_id
        response = {"event_type": event.event_type, "event_id": event.event_id}
        history = await self.ledger.find_all_by_subscription(psid)

        existing = None
        if outcome.provider_transaction_id:
            existing = await self.ledger.find_by_provider_transaction_id(provider, outcome.provider_transaction_id)
        else:
            pending = [
                entry
                for entry in history
                if entry.provider == provider and entry.status == PaymentStatus.PENDING.value
            ]
            existing = pending[-1] if pending else None

        if existing is not None:
            if is_redundant_update(existing.status, outcome.status):
                logger.info(f"Log {existing.id} for mandate {psid} already {existing.status}; ignoring redundant webhook")
                return None
            previous = existing.status
            entry = await self.ledger.update_status(
                existing.id,
                outcome.status,
                provider_response=response,
                error_message=outcome.error_message,
                provider_transaction_id=outcome.provider_transaction_id,
            )
            return LedgerChange(entry=entry, previous_status=previous)

        merchant_id = outcome.merchant_id
        if not merchant_id:
            known = next((entry.merchant_id for entry in history if entry.merchant_id), None)
            if known is None:
                logger.error(f"Merchant id missing for mandate {psid}; {event.event_type} not recorded")
                return None
            merchant_id = known
            logger.warning(f"Recovered merchant {merchant_id} for mandate {psid} from previous logs")

        amount, currency = outcome.amount, outcome.currency
        if amount is None or amount <= 0 or not currency:
            reference = history[-1] if history else None
            if reference is None:
                logger.warning(f"Cannot record {event.event_type} for mandate {psid}: amount or currency missing")
                return None
            amount, currency = reference.amount, reference.currency

        entry = await self.ledger.create_log(
            merchant_id=merchant_id,
            provider=provider,
            amount=amount,
            currency=currency,
            transaction_type=TransactionType.RECURRING_RENEWAL,
            order_id=outcome.order_id,
            provider_subscription_id=psid,
            status=outcome.status,
            provider_transaction_id=outcome.provider_transaction_id,
            provider_response=response,
            error_message=outcome.error_message,
        )
        return LedgerChange(entry=entry)

    async def process_failed_renewal(
        self,
        provider: str,
        provider_subscription_id: str,
        params: DunningParameters | None = None,
        now: datetime | None = None,
    ) -> DunningDecision | None:
        """Hand a failed renewal to the dunning engine."""
        if not self.config.enable_automated_dunning or self.dunning is None:
            logger.debug(f"Automated dunning is disabled; skipping failed renewal of {provider_subscription_id}")
            return None

        last_failed = await self.ledger.find_latest_failed_by_subscription(provider_subscription_id)
        if last_failed is None:
            logger.info(f"No failed renewal on record for mandate {provider_subscription_id}; nothing to dun")
            return None

        logger.info(f"Processing failed renewal for mandate {provider_subscription_id} via {provider}")
        return await self.dunning.execute_dunning(
            provider_subscription_id, provider, params, last_attempt=last_failed, now=now
        )
