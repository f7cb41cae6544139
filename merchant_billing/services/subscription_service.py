"""Subscription orchestration.

Loads the aggregate, runs provider calls, applies the transition and saves
it. Every read-modify-write for one subscription happens under its keyed
lock, and the repository's version check catches writers in other processes.
Events are published only after the aggregate has been saved.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from merchant_billing.config import Settings, settings
from merchant_billing.core.exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    GatewayIntegrationError,
    InvalidSubscriptionStateError,
    NotFoundError,
    PaymentProcessingError,
    UnsupportedGatewayError,
    ValidationError,
)
from merchant_billing.core.locking import KeyedLock, subscription_locks
from merchant_billing.domain import events
from merchant_billing.domain.events import SubscriptionEvent
from merchant_billing.domain.payment_state import PaymentStatus, TransactionType
from merchant_billing.domain.plan import BillingCycle, PricingTier, SubscriptionPlan
from merchant_billing.domain.proration import calculate_proration
from merchant_billing.domain.subscription import BillingDetails, MerchantSubscription, SubscriptionStatus
from merchant_billing.gateways.base import RecurringRequest, WebhookOutcome
from merchant_billing.models.transaction_log import TransactionLog
from merchant_billing.repositories.base import PlanRepository, SubscriptionRepository
from merchant_billing.services.notification_service import NotificationService, notification_service
from merchant_billing.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

# Provider interval and count for each billing cycle
CYCLE_INTERVALS: dict[BillingCycle, tuple[str, int]] = {
    BillingCycle.MONTHLY: ("month", 1),
    BillingCycle.QUARTERLY: ("month", 3),
    BillingCycle.ANNUAL: ("year", 1),
}

# Provider mandate states that mean the first period is already paid
PAID_MANDATE_STATUSES = frozenset({"active", "trialing"})

Mutation = Callable[[MerchantSubscription], None]


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(UTC)


def _record_success(
    subscription: MerchantSubscription,
    amount: Decimal,
    currency: str,
    provider_transaction_id: str | None,
    now: datetime,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> None:
    """Apply a successful charge and move the period on when it has elapsed."""
    subscription.record_payment_success(amount, currency, provider_transaction_id, now=now)
    if period_end is not None:
        if period_end > subscription.current_period_end:
            subscription.renew(period_start or subscription.current_period_end, period_end, now=now)
    elif subscription.current_period_end <= now:
        start = subscription.current_period_end
        subscription.renew(start, subscription.billing_cycle.next_period_end(start), now=now)


class SubscriptionService:
    """Lifecycle operations on merchant subscriptions."""

    MAX_CONFLICT_RETRIES = 3

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        plans: PlanRepository,
        payments: PaymentService,
        notifications: NotificationService | None = None,
        config: Settings | None = None,
        locks: KeyedLock | None = None,
    ):
        self.subscriptions = subscriptions
        self.plans = plans
        self.payments = payments
        self.gateways = payments.gateways
        self.notifications = notifications or notification_service
        self.config = config or settings
        self.locks = locks or subscription_locks

    # ==================== QUERIES ====================

    async def get(self, subscription_id: str) -> MerchantSubscription:
        subscription = await self.subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    async def get_by_provider_subscription_id(
        self, provider: str, provider_subscription_id: str
    ) -> MerchantSubscription | None:
        return await self.subscriptions.get_by_provider_subscription_id(provider, provider_subscription_id)

    async def get_plan(self, plan_id: str) -> SubscriptionPlan:
        plan = await self.plans.get(plan_id)
        if plan is None:
            raise NotFoundError("Plan", plan_id)
        return plan

    @staticmethod
    def price_for(plan: SubscriptionPlan, cycle: BillingCycle) -> PricingTier:
        tier = plan.price_for(cycle)
        if tier is None:
            raise ValidationError(f"Plan '{plan.id}' has no {cycle.value} price")
        return tier

    # ==================== LIFECYCLE ====================

    async def subscribe(
        self,
        merchant_id: str,
        plan_id: str,
        billing_cycle: str | BillingCycle,
        billing_details: BillingDetails,
        provider: str,
        now: datetime | None = None,
    ) -> MerchantSubscription:
        """Subscribe a merchant to a plan and collect the first period.

        The provider mandate is created first. Providers that bill renewals
        themselves also take the first payment; for the others it is charged
        here against the stored token.

        Raises:
            ConfigurationError: Recurring billing is disabled
            ValidationError: Merchant already subscribed or plan not priced for the cycle
            NotFoundError: Unknown plan
            SubscriptionManagementError: Provider refused the mandate
            PaymentProcessingError: First charge could not reach the provider
        """
        if not self.config.enable_recurring_billing:
            raise ConfigurationError("Recurring billing is currently disabled")

        at = _now(now)
        cycle = BillingCycle(billing_cycle)
        if await self.subscriptions.find_live_by_merchant(merchant_id) is not None:
            raise ValidationError(f"Merchant {merchant_id} already has a live subscription")

        plan = await self.get_plan(plan_id)
        tier = self.price_for(plan, cycle)
        gateway = self.gateways.get_gateway(provider)

        subscription = MerchantSubscription.subscribe(
            merchant_id=merchant_id,
            plan_id=plan_id,
            billing_cycle=cycle,
            billing_details=billing_details,
            provider=gateway.gateway_type.value,
            now=at,
        )

        interval, interval_count = CYCLE_INTERVALS[cycle]
        mandate = await gateway.create_recurring_payment(
            RecurringRequest(
                merchant_id=merchant_id,
                plan_id=plan_id,
                amount=tier.amount,
                currency=tier.currency,
                interval=interval,
                interval_count=interval_count,
                payment_method_token=billing_details.payment_method_token,
                metadata={"subscription_id": subscription.id},
            )
        )
        subscription.link_provider(
            gateway.gateway_type.value,
            mandate.provider_subscription_id,
            period_start=mandate.current_period_start,
            period_end=mandate.current_period_end,
        )

        await self.subscriptions.add(subscription)
        await self.notifications.publish_all(subscription.pull_events())
        logger.info(
            f"Subscription {subscription.id} created for merchant {merchant_id} on plan {plan_id} "
            f"({cycle.value}) via {subscription.provider} mandate {subscription.provider_subscription_id}"
        )

        if gateway.bills_renewals_automatically:
            if mandate.status in PAID_MANDATE_STATUSES:
                return await self._apply(
                    subscription.id,
                    lambda s: _record_success(s, tier.amount, tier.currency, None, at),
                )
            # Activation arrives with the provider's invoice webhook
            return subscription

        return await self.collect_payment(subscription.id, TransactionType.RECURRING_INITIAL, now=at)

    async def collect_payment(
        self,
        subscription_id: str,
        transaction_type: TransactionType = TransactionType.RECURRING_RENEWAL,
        now: datetime | None = None,
    ) -> MerchantSubscription:
        """Charge the current plan price and apply the outcome.

        A decline is recorded on the subscription and returned; a gateway
        error is recorded the same way and then raised.
        """
        at = _now(now)
        async with self.locks.acquire(subscription_id):
            subscription = await self.get(subscription_id)
            if subscription.is_terminal:
                raise InvalidSubscriptionStateError(
                    f"Cannot collect payment for subscription {subscription_id} in status {subscription.status.value}"
                )
            if not subscription.provider:
                raise ValidationError(f"Subscription {subscription_id} has no payment provider")

            plan = await self.get_plan(subscription.plan_id)
            tier = self.price_for(plan, subscription.billing_cycle)
            outcome = await self.payments.charge(
                merchant_id=subscription.merchant_id,
                provider=subscription.provider,
                amount=tier.amount,
                currency=tier.currency,
                payment_method_token=subscription.billing_details.payment_method_token,
                transaction_type=transaction_type,
                order_id=subscription.id,
                provider_subscription_id=subscription.provider_subscription_id,
                description=f"{plan.name} {subscription.billing_cycle.value} subscription",
                metadata={"subscription_id": subscription.id},
                now=at,
            )
            subscription = await self.apply_ledger_outcome(subscription_id, outcome.entry, now=at)

        if outcome.gateway_error is not None:
            raise PaymentProcessingError(f"Subscription payment failed: {outcome.gateway_error.detail}")
        return subscription

    async def apply_ledger_outcome(
        self,
        subscription_id: str,
        entry: TransactionLog,
        now: datetime | None = None,
    ) -> MerchantSubscription:
        """Feed a settled ledger row into the state machine. Pending rows change nothing."""
        at = _now(now)
        if entry.status == PaymentStatus.SUCCESSFUL.value:
            return await self._apply(
                subscription_id,
                lambda s: _record_success(
                    s, Decimal(entry.amount), entry.currency, entry.provider_transaction_id, at
                ),
            )
        if entry.status == PaymentStatus.FAILED.value:
            return await self._apply(
                subscription_id,
                lambda s: s.record_payment_failure(
                    entry.error_message or "payment failed",
                    now=at,
                    provider_transaction_id=entry.provider_transaction_id,
                ),
            )
        return await self.get(subscription_id)

    async def change_plan(
        self,
        subscription_id: str,
        new_plan_id: str,
        new_cycle: str | BillingCycle | None = None,
        now: datetime | None = None,
    ) -> MerchantSubscription:
        """Move the subscription to another plan, settling proration.

        A positive proration is charged before the change; if that charge
        does not succeed the plan stays as it was. A negative proration is
        carried as a credit on the plan-changed event.

        Raises:
            InvalidSubscriptionStateError: Subscription is cancelled or terminated
            PaymentProcessingError: Proration charge declined or failed
            SubscriptionManagementError: Provider mandate could not be read
        """
        at = _now(now)
        async with self.locks.acquire(subscription_id):
            subscription = await self.get(subscription_id)
            if subscription.is_terminal:
                raise InvalidSubscriptionStateError(
                    f"Cannot change plan on subscription {subscription_id} in status {subscription.status.value}"
                )

            old_plan = await self.get_plan(subscription.plan_id)
            new_plan = await self.get_plan(new_plan_id)
            target_cycle = BillingCycle(new_cycle) if new_cycle else subscription.billing_cycle
            self.price_for(new_plan, target_cycle)

            proration = calculate_proration(
                subscription, old_plan, new_plan, at, policy=self.config.proration_policy
            )
            logger.info(
                f"Plan change for subscription {subscription_id}: {old_plan.id} -> {new_plan.id}, "
                f"proration {proration}"
            )

            if proration > 0:
                currency = new_plan.price_for(subscription.billing_cycle).currency
                customer_id = await self._provider_customer_id(subscription)
                outcome = await self.payments.charge(
                    merchant_id=subscription.merchant_id,
                    provider=subscription.provider,
                    amount=proration,
                    currency=currency,
                    payment_method_token=subscription.billing_details.payment_method_token,
                    transaction_type=TransactionType.SALE,
                    order_id=subscription.id,
                    description=f"Proration {old_plan.id} -> {new_plan.id}",
                    metadata={"subscription_id": subscription.id},
                    now=at,
                    customer_id=customer_id,
                )
                if not outcome.succeeded:
                    reason = outcome.entry.error_message or outcome.entry.status
                    raise PaymentProcessingError(f"Proration charge for plan change failed: {reason}")

            return await self._apply(
                subscription_id,
                lambda s: s.change_plan(new_plan_id, proration, new_cycle=target_cycle, now=at),
            )

    async def cancel(
        self,
        subscription_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> MerchantSubscription:
        """Cancel locally and stop the provider mandate.

        Raises:
            InvalidSubscriptionStateError: Subscription is terminated
            SubscriptionManagementError: Provider refused the cancellation
        """
        async with self.locks.acquire(subscription_id):
            subscription = await self.get(subscription_id)
            if subscription.status == SubscriptionStatus.CANCELLED:
                return subscription
            if subscription.status == SubscriptionStatus.TERMINATED:
                raise InvalidSubscriptionStateError(f"Subscription {subscription_id} is already terminated")

            if subscription.provider and subscription.provider_subscription_id:
                gateway = self.gateways.get_gateway(subscription.provider)
                await gateway.cancel_recurring_payment(subscription.provider_subscription_id)

            return await self._apply(subscription_id, lambda s: s.cancel(reason, now=_now(now)))

    async def suspend(
        self,
        subscription_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> MerchantSubscription:
        return await self._apply(subscription_id, lambda s: s.suspend(reason, now=_now(now)))

    async def terminate(
        self,
        subscription_id: str,
        reason: str | None = None,
        now: datetime | None = None,
        cancel_mandate: bool = False,
    ) -> MerchantSubscription:
        """Terminate the subscription, optionally stopping the provider mandate first.

        Mandate cancellation failures are logged; termination still happens.
        """
        async with self.locks.acquire(subscription_id):
            subscription = await self.get(subscription_id)
            if subscription.is_terminal:
                return subscription
            if cancel_mandate and subscription.provider and subscription.provider_subscription_id:
                try:
                    gateway = self.gateways.get_gateway(subscription.provider)
                    await gateway.cancel_recurring_payment(subscription.provider_subscription_id)
                except (GatewayIntegrationError, UnsupportedGatewayError) as e:
                    logger.error(
                        f"Could not cancel mandate {subscription.provider_subscription_id} "
                        f"while terminating subscription {subscription_id}: {e.detail}"
                    )
            return await self._apply(subscription_id, lambda s: s.terminate(reason, now=_now(now)))

    # ==================== PAYMENT OUTCOMES ====================

    async def apply_payment_success(
        self,
        subscription_id: str,
        amount: Decimal,
        currency: str,
        provider_transaction_id: str | None,
        now: datetime | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> MerchantSubscription:
        at = _now(now)
        return await self._apply(
            subscription_id,
            lambda s: _record_success(
                s, amount, currency, provider_transaction_id, at, period_start=period_start, period_end=period_end
            ),
        )

    async def apply_payment_failure(
        self,
        subscription_id: str,
        reason: str | None,
        now: datetime | None = None,
        consecutive_failures: int | None = None,
        provider_transaction_id: str | None = None,
    ) -> MerchantSubscription:
        """Record a failed charge; ``consecutive_failures`` re-syncs the counter from the ledger."""

        def mutation(subscription: MerchantSubscription) -> None:
            subscription.record_payment_failure(reason, now=_now(now), provider_transaction_id=provider_transaction_id)
            if consecutive_failures is not None:
                subscription.sync_dunning_attempts(consecutive_failures)

        return await self._apply(subscription_id, mutation)

    async def sync_dunning_attempts(self, subscription_id: str, consecutive_failures: int) -> MerchantSubscription:
        subscription = await self.get(subscription_id)
        if subscription.dunning_attempts == consecutive_failures:
            return subscription
        return await self._apply(subscription_id, lambda s: s.sync_dunning_attempts(consecutive_failures))

    async def apply_webhook_outcome(
        self,
        provider: str,
        outcome: WebhookOutcome,
        now: datetime | None = None,
    ) -> MerchantSubscription | None:
        """Apply a provider notification to the subscription it belongs to.

        A charge outcome already in the payment history is not applied again,
        so a redelivered or re-run notification leaves the subscription as is.
        """
        if not outcome.provider_subscription_id:
            return None

        subscription = await self.get_by_provider_subscription_id(provider, outcome.provider_subscription_id)
        if subscription is None:
            logger.warning(
                f"No subscription for {provider} mandate {outcome.provider_subscription_id}; outcome ignored"
            )
            return None

        async with self.locks.acquire(subscription.id):
            subscription = await self.get(subscription.id)
            if subscription.is_terminal:
                logger.info(f"Subscription {subscription.id} is {subscription.status.value}; outcome ignored")
                return subscription

            if outcome.subscription_cancelled:
                return await self.terminate(subscription.id, reason=f"cancelled at {provider}", now=now)

            if outcome.status in (PaymentStatus.SUCCESSFUL, PaymentStatus.FAILED) and subscription.has_payment_record(
                outcome.provider_transaction_id, success=outcome.status == PaymentStatus.SUCCESSFUL
            ):
                logger.info(
                    f"Subscription {subscription.id} already recorded {provider} transaction "
                    f"{outcome.provider_transaction_id} as {outcome.status.value}; outcome ignored"
                )
                return subscription

            if outcome.status == PaymentStatus.SUCCESSFUL:
                tier_amount = outcome.amount
                currency = outcome.currency
                if tier_amount is None or not currency:
                    tier = self.price_for(await self.get_plan(subscription.plan_id), subscription.billing_cycle)
                    tier_amount, currency = tier.amount, tier.currency
                return await self.apply_payment_success(
                    subscription.id,
                    tier_amount,
                    currency,
                    outcome.provider_transaction_id,
                    now=now,
                    period_start=outcome.period_start,
                    period_end=outcome.period_end,
                )
            if outcome.status == PaymentStatus.FAILED:
                return await self.apply_payment_failure(
                    subscription.id,
                    outcome.error_message or "payment failed",
                    now=now,
                    provider_transaction_id=outcome.provider_transaction_id,
                )
            return subscription

    # ==================== PLAN EVENTS ====================

    async def handle_plan_price_changed(
        self,
        plan_id: str,
        old_pricing: list[PricingTier],
        new_pricing: list[PricingTier],
        now: datetime | None = None,
    ) -> int:
        """Tell every live subscriber of a plan that its price changed.

        Subscriptions are not modified; the new price is charged from the
        next renewal. Returns the number of subscribers notified.
        """
        at = _now(now)
        old_by_cycle = {tier.cycle: tier for tier in old_pricing}
        new_by_cycle = {tier.cycle: tier for tier in new_pricing}
        notified = 0

        for subscription in await self.subscriptions.find_live_by_plan(plan_id):
            old_tier = old_by_cycle.get(subscription.billing_cycle)
            new_tier = new_by_cycle.get(subscription.billing_cycle)
            if new_tier is None:
                logger.warning(
                    f"Plan {plan_id} no longer has a {subscription.billing_cycle.value} price; "
                    f"subscription {subscription.id} cannot renew as is"
                )
            elif old_tier is not None and (old_tier.amount, old_tier.currency) == (new_tier.amount, new_tier.currency):
                continue

            tier = new_tier or old_tier
            await self.notifications.publish(
                SubscriptionEvent(
                    name=events.SUBSCRIPTION_PLAN_PRICE_CHANGED,
                    subscription_id=subscription.id,
                    merchant_id=subscription.merchant_id,
                    old_status=subscription.status.value,
                    new_status=subscription.status.value,
                    reason=f"price of plan {plan_id} changed",
                    data={
                        "plan_id": plan_id,
                        "billing_cycle": subscription.billing_cycle.value,
                        "old_amount": str(old_tier.amount) if old_tier else None,
                        "new_amount": str(new_tier.amount) if new_tier else None,
                        "currency": tier.currency if tier else None,
                        "effective_from": subscription.current_period_end.isoformat(),
                    },
                    occurred_at=at,
                )
            )
            notified += 1

        logger.info(f"Price change of plan {plan_id} notified to {notified} subscription(s)")
        return notified

    # ==================== SWEEPS ====================

    async def run_renewal_sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Charge every subscription whose period has ended.

        Providers that bill renewals themselves are skipped, as are past-due
        subscriptions whose renewal already failed (dunning owns those).
        """
        at = _now(now)
        due = await self.subscriptions.find_due_for_renewal(at)
        summary = {"due": len(due), "renewed": 0, "failed": 0, "skipped": 0}

        for subscription in due:
            try:
                if not subscription.provider or self.gateways.get_gateway(subscription.provider).bills_renewals_automatically:
                    summary["skipped"] += 1
                    continue
                if (
                    subscription.status == SubscriptionStatus.PAST_DUE
                    and subscription.last_payment_attempt_at is not None
                    and subscription.last_payment_attempt_at >= subscription.current_period_end
                ):
                    summary["skipped"] += 1
                    continue

                renewed = await self.collect_payment(subscription.id, TransactionType.RECURRING_RENEWAL, now=at)
            except Exception as e:
                logger.error(f"Renewal of subscription {subscription.id} failed: {e}", exc_info=True)
                summary["failed"] += 1
                continue

            if renewed.current_period_end > subscription.current_period_end:
                summary["renewed"] += 1
            else:
                summary["failed"] += 1

        logger.info(f"Renewal sweep finished: {summary}")
        return summary

    async def run_suspension_sweep(self, now: datetime | None = None) -> int:
        """Terminate subscriptions suspended for longer than the configured grace period."""
        at = _now(now)
        days = self.config.termination_after_days_suspended
        cutoff = at - timedelta(days=days)
        terminated = 0

        for subscription in await self.subscriptions.find_suspended_before(cutoff):
            try:
                await self.terminate(
                    subscription.id,
                    reason=f"suspended for more than {days} days",
                    now=at,
                    cancel_mandate=True,
                )
                terminated += 1
            except Exception as e:
                logger.error(f"Termination of subscription {subscription.id} failed: {e}", exc_info=True)

        logger.info(f"Suspension sweep terminated {terminated} subscription(s)")
        return terminated

    # ==================== INTERNALS ====================

    async def _provider_customer_id(self, subscription: MerchantSubscription) -> str | None:
        """Provider customer holding the mandate's payment method, for providers that keep one."""
        gateway = self.gateways.get_gateway(subscription.provider)
        if not gateway.bills_renewals_automatically or not subscription.provider_subscription_id:
            return None
        details = await gateway.get_recurring_payment_details(subscription.provider_subscription_id)
        return details.plan_details.get("customer_id")

    async def _apply(self, subscription_id: str, mutation: Mutation) -> MerchantSubscription:
        """Load, mutate and save under the subscription's lock, retrying version conflicts."""
        async with self.locks.acquire(subscription_id):
            for attempt in range(self.MAX_CONFLICT_RETRIES + 1):
                subscription = await self.get(subscription_id)
                mutation(subscription)
                try:
                    await self.subscriptions.save(subscription)
                except ConcurrencyConflictError:
                    if attempt >= self.MAX_CONFLICT_RETRIES:
                        logger.error(f"Giving up on subscription {subscription_id} after {attempt + 1} version conflicts")
                        raise
                    logger.warning(f"Version conflict on subscription {subscription_id}; retrying")
                    continue
                await self.notifications.publish_all(subscription.pull_events())
                return subscription
