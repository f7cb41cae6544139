"""Dunning engine: retries failed recurring charges and escalates when retries run out.

The ledger is the source of truth for the attempt count. The subscription's
``dunning_attempts`` is refreshed from it on every pass.
"""

import logging
from datetime import UTC, datetime
from decimal import Decimal

from merchant_billing.config import Settings, settings
from merchant_billing.core.exceptions import DunningProcessError, GatewayIntegrationError
from merchant_billing.domain.dunning import (
    DunningDecision,
    DunningParameters,
    FinalAction,
    count_consecutive_failures,
    decide,
)
from merchant_billing.domain.payment_state import PaymentStatus, TransactionType
from merchant_billing.domain.subscription import RENEWABLE_STATUSES, MerchantSubscription, SubscriptionStatus
from merchant_billing.gateways.base import PaymentResult, RetryRequest
from merchant_billing.models.transaction_log import TransactionLog
from merchant_billing.services.ledger_service import LedgerService
from merchant_billing.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


class DunningService:
    """Runs retry campaigns for subscriptions in arrears."""

    def __init__(
        self,
        ledger: LedgerService,
        subscriptions: SubscriptionService,
        config: Settings | None = None,
    ):
        self.ledger = ledger
        self.subscriptions = subscriptions
        self.gateways = subscriptions.gateways
        self.config = config or settings

    def default_parameters(self) -> DunningParameters:
        return DunningParameters.from_settings(self.config)

    async def execute_dunning(
        self,
        provider_subscription_id: str,
        provider: str,
        params: DunningParameters | None = None,
        last_attempt: TransactionLog | None = None,
        now: datetime | None = None,
    ) -> DunningDecision | None:
        """Take the next dunning step for one subscription.

        Returns the decision taken, or None when nothing was eligible.

        Raises:
            DunningProcessError: On any unexpected failure; a retry row already
                written is left Failed
        """
        if not self.config.enable_automated_dunning:
            logger.info(f"Automated dunning is disabled; skipping {provider}/{provider_subscription_id}")
            return None

        params = params or self.default_parameters()
        at = now or datetime.now(UTC)
        retry_entry: TransactionLog | None = None

        try:
            subscription = await self.subscriptions.get_by_provider_subscription_id(provider, provider_subscription_id)
            if subscription is None:
                logger.warning(f"Dunning requested for unknown mandate {provider}/{provider_subscription_id}")
                return None

            async with self.subscriptions.locks.acquire(subscription.id):
                # Another pass may have settled the arrears while we waited
                subscription = await self.subscriptions.get(subscription.id)
                if subscription.status not in RENEWABLE_STATUSES:
                    logger.info(
                        f"Subscription {subscription.id} is {subscription.status.value}; no dunning action"
                    )
                    return None

                attempts = await self.ledger.find_all_by_subscription(provider_subscription_id)
                failures = count_consecutive_failures(attempts)
                latest_failed = await self.ledger.find_latest_failed_by_subscription(provider_subscription_id)
                if last_attempt is None or (
                    latest_failed is not None and latest_failed.created_at > last_attempt.created_at
                ):
                    last_attempt = latest_failed
                subscription = await self.subscriptions.sync_dunning_attempts(subscription.id, failures)
                if failures == 0:
                    logger.info(f"Subscription {subscription.id} has no failed renewal since its last payment")
                    return None

                decision = decide(failures, params, last_attempt.created_at if last_attempt else None, at)
                logger.info(
                    f"Dunning for subscription {subscription.id}: {failures} consecutive failure(s) -> {decision.value}"
                )

                if decision == DunningDecision.DEFER:
                    return decision
                if decision == DunningDecision.FINAL_ACTION:
                    await self._final_action(subscription, params, at)
                    return decision

                retry_entry = await self._open_retry(subscription, last_attempt, at)
                result = await self._retry(subscription, retry_entry)
                retry_entry = await self._settle_retry(retry_entry, result, at)
                if result.success:
                    await self.subscriptions.apply_payment_success(
                        subscription.id,
                        Decimal(retry_entry.amount),
                        retry_entry.currency,
                        retry_entry.provider_transaction_id or result.transaction_id,
                        now=at,
                    )
                    logger.info(f"Dunning retry recovered subscription {subscription.id}")
                    return decision

                if result.status == PaymentStatus.PENDING:
                    logger.info(f"Dunning retry {retry_entry.id} is pending at {provider}")
                    return decision

                failures += 1
                subscription = await self.subscriptions.apply_payment_failure(
                    subscription.id,
                    result.error_message or "retry failed",
                    now=at,
                    consecutive_failures=failures,
                )
                if failures >= params.max_retries or params.interval_for(failures) is None:
                    await self._final_action(subscription, params, at)
                    return DunningDecision.FINAL_ACTION
                return decision

        except DunningProcessError:
            raise
        except Exception as e:
            logger.error(
                f"Dunning failed for {provider}/{provider_subscription_id}: {e}",
                exc_info=True,
            )
            if retry_entry is not None and retry_entry.status == PaymentStatus.PENDING.value:
                await self.ledger.update_status(
                    retry_entry.id, PaymentStatus.FAILED, error_message=f"Dunning aborted: {e}"
                )
            raise DunningProcessError(f"Unexpected error during dunning for {provider_subscription_id}: {e}")

    async def run_dunning_sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Run one dunning pass over every past-due subscription."""
        if not self.config.enable_automated_dunning:
            logger.info("Automated dunning is disabled; sweep skipped")
            return {}

        at = now or datetime.now(UTC)
        params = self.default_parameters()
        summary = {decision.value: 0 for decision in DunningDecision}
        summary["errors"] = 0

        for subscription in await self.subscriptions.subscriptions.find_in_dunning():
            try:
                decision = await self.execute_dunning(
                    subscription.provider_subscription_id, subscription.provider, params, now=at
                )
            except DunningProcessError as e:
                logger.error(f"Dunning sweep: subscription {subscription.id} failed: {e.detail}")
                summary["errors"] += 1
                continue
            if decision is not None:
                summary[decision.value] += 1

        logger.info(f"Dunning sweep finished: {summary}")
        return summary

    # ==================== INTERNALS ====================

    async def _open_retry(
        self,
        subscription: MerchantSubscription,
        last_attempt: TransactionLog | None,
        now: datetime,
    ) -> TransactionLog:
        """Write the Pending retry row, charging what the last attempt asked for."""
        if last_attempt is not None:
            amount, currency = Decimal(last_attempt.amount), last_attempt.currency
        else:
            plan = await self.subscriptions.get_plan(subscription.plan_id)
            tier = self.subscriptions.price_for(plan, subscription.billing_cycle)
            amount, currency = tier.amount, tier.currency

        return await self.ledger.create_log(
            merchant_id=subscription.merchant_id,
            provider=subscription.provider,
            amount=amount,
            currency=currency,
            transaction_type=TransactionType.RECURRING_RETRY,
            order_id=subscription.id,
            provider_subscription_id=subscription.provider_subscription_id,
            now=now,
        )

    async def _retry(self, subscription: MerchantSubscription, entry: TransactionLog) -> PaymentResult:
        gateway = self.gateways.get_gateway(subscription.provider)
        try:
            return await gateway.retry_recurring_payment(
                RetryRequest(
                    provider_subscription_id=subscription.provider_subscription_id,
                    amount=Decimal(entry.amount),
                    currency=entry.currency,
                    payment_method_token=subscription.billing_details.payment_method_token,
                    merchant_id=subscription.merchant_id,
                    reference_id=str(entry.id),
                )
            )
        except GatewayIntegrationError as e:
            logger.error(f"Dunning retry {entry.id} for subscription {subscription.id} failed: {e.detail}")
            return PaymentResult(
                status=PaymentStatus.FAILED,
                error_message=e.detail,
                raw_response={"error": e.detail},
            )

    async def _settle_retry(
        self,
        entry: TransactionLog,
        result: PaymentResult,
        now: datetime,
    ) -> TransactionLog:
        """Write the retry outcome onto its row.

        Providers that retry by re-paying the original invoice hand back the
        id already stored on the failed renewal row. That id stays in the
        provider response only, since a provider id may appear once per ledger.
        """
        provider_transaction_id = result.transaction_id
        provider_response = result.raw_response
        if provider_transaction_id:
            existing = await self.ledger.find_by_provider_transaction_id(entry.provider, provider_transaction_id)
            if existing is not None and existing.id != entry.id:
                logger.info(
                    f"Retry {entry.id} reused {entry.provider} transaction {provider_transaction_id} "
                    f"from ledger row {existing.id}"
                )
                provider_response = {**(provider_response or {}), "provider_transaction_id": provider_transaction_id}
                provider_transaction_id = None

        return await self.ledger.update_status(
            entry.id,
            result.status,
            provider_response=provider_response,
            error_message=result.error_message if result.status == PaymentStatus.FAILED else None,
            provider_transaction_id=provider_transaction_id,
            now=now,
        )

    async def _final_action(
        self,
        subscription: MerchantSubscription,
        params: DunningParameters,
        now: datetime,
    ) -> None:
        """Suspend, then apply the configured final action."""
        reason = f"payment retries exhausted after {subscription.dunning_attempts} attempt(s)"
        if subscription.status == SubscriptionStatus.PAST_DUE:
            subscription = await self.subscriptions.suspend(subscription.id, reason=reason, now=now)

        if params.notify_customer:
            logger.info(
                f"Notify {subscription.billing_details.contact_email}: subscription {subscription.id} "
                f"dunning final action {params.final_action.value}"
            )

        if params.final_action == FinalAction.CANCEL_SUBSCRIPTION:
            await self.subscriptions.cancel(subscription.id, reason=reason, now=now)
            logger.info(f"Subscription {subscription.id} cancelled after failed dunning")
        else:
            logger.info(f"Subscription {subscription.id} left suspended as unpaid after failed dunning")
