"""Tests for subscription orchestration."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from conftest import T0, declined
from merchant_billing.core.exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    GatewayIntegrationError,
    InvalidSubscriptionStateError,
    NotFoundError,
    PaymentProcessingError,
    SubscriptionManagementError,
    ValidationError,
)
from merchant_billing.domain import events
from merchant_billing.domain.payment_state import PaymentStatus, TransactionType
from merchant_billing.domain.plan import BillingCycle, PricingTier
from merchant_billing.domain.subscription import SubscriptionStatus
from merchant_billing.gateways.base import WebhookOutcome
from merchant_billing.services.subscription_service import SubscriptionService

PERIOD_END = datetime(2026, 2, 1, 9, 0, tzinfo=UTC)


async def _subscribe(service, billing_details, provider: str = "stcpay", merchant_id: str = "m_1", **kwargs):
    return await service.subscribe(merchant_id, "basic", "monthly", billing_details, provider, now=T0, **kwargs)


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_token_billed_subscription_charged_and_activated(
        self, subscription_service, billing_details, stcpay_gateway, log_repository, notifications
    ):
        subscription = await _subscribe(subscription_service, billing_details)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.provider == "stcpay"
        assert subscription.provider_subscription_id.startswith("mandate_")
        assert subscription.current_period_end == PERIOD_END
        assert stcpay_gateway.mandates[0].interval == "month"
        assert stcpay_gateway.charges[0].amount == Decimal("30.00")
        [entry] = log_repository.rows.values()
        assert entry.transaction_type == TransactionType.RECURRING_INITIAL.value
        assert entry.provider_subscription_id == subscription.provider_subscription_id
        assert notifications.names == [events.SUBSCRIPTION_CREATED, events.SUBSCRIPTION_ACTIVATED]

    @pytest.mark.asyncio
    async def test_declined_first_charge_stays_pending(
        self, subscription_service, billing_details, stcpay_gateway
    ):
        stcpay_gateway.payment_results.append(declined())

        subscription = await _subscribe(subscription_service, billing_details)

        assert subscription.status == SubscriptionStatus.PENDING
        assert subscription.payment_history[-1].success is False

    @pytest.mark.asyncio
    async def test_auto_billing_provider_activates_from_mandate(
        self, subscription_service, billing_details, stripe_gateway, log_repository
    ):
        subscription = await _subscribe(subscription_service, billing_details, provider="stripe")

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert stripe_gateway.charges == []
        assert log_repository.rows == {}

    @pytest.mark.asyncio
    async def test_auto_billing_provider_waits_for_incomplete_mandate(
        self, subscription_service, billing_details, stripe_gateway
    ):
        stripe_gateway.mandate_status = "incomplete"

        subscription = await _subscribe(subscription_service, billing_details, provider="stripe")

        assert subscription.status == SubscriptionStatus.PENDING

    @pytest.mark.asyncio
    async def test_quarterly_cycle_maps_to_three_months(self, subscription_service, billing_details, stcpay_gateway):
        await subscription_service.subscribe("m_q", "basic", BillingCycle.QUARTERLY, billing_details, "stcpay", now=T0)

        assert stcpay_gateway.mandates[0].interval == "month"
        assert stcpay_gateway.mandates[0].interval_count == 3
        assert stcpay_gateway.mandates[0].amount == Decimal("80.00")

    @pytest.mark.asyncio
    async def test_second_live_subscription_rejected(self, subscription_service, billing_details):
        await _subscribe(subscription_service, billing_details)
        with pytest.raises(ValidationError):
            await _subscribe(subscription_service, billing_details)

    @pytest.mark.asyncio
    async def test_unknown_plan(self, subscription_service, billing_details):
        with pytest.raises(NotFoundError):
            await subscription_service.subscribe("m_1", "gold", "monthly", billing_details, "stcpay", now=T0)

    @pytest.mark.asyncio
    async def test_plan_without_cycle_price(self, subscription_service, billing_details):
        with pytest.raises(ValidationError):
            await subscription_service.subscribe("m_1", "annual_only", "monthly", billing_details, "stcpay", now=T0)

    @pytest.mark.asyncio
    async def test_mandate_refusal_creates_nothing(
        self, subscription_service, billing_details, stcpay_gateway, subscription_repository
    ):
        async def refuse(request):
            raise SubscriptionManagementError("stcpay", "consent declined")

        stcpay_gateway.create_recurring_payment = refuse

        with pytest.raises(SubscriptionManagementError):
            await _subscribe(subscription_service, billing_details)
        assert subscription_repository.rows == {}

    @pytest.mark.asyncio
    async def test_disabled_recurring_billing(
        self, subscription_repository, plan_repository, payments, notifications, settings, billing_details
    ):
        service = SubscriptionService(
            subscription_repository,
            plan_repository,
            payments,
            notifications=notifications,
            config=settings.model_copy(update={"enable_recurring_billing": False}),
        )
        with pytest.raises(ConfigurationError):
            await _subscribe(service, billing_details)


class TestCollectPayment:
    @pytest.mark.asyncio
    async def test_gateway_error_recorded_then_raised(
        self, subscription_service, billing_details, stcpay_gateway
    ):
        subscription = await _subscribe(subscription_service, billing_details)
        stcpay_gateway.payment_results.append(GatewayIntegrationError("stcpay", "timed out"))

        with pytest.raises(PaymentProcessingError):
            await subscription_service.collect_payment(subscription.id, now=PERIOD_END)

        stored = await subscription_service.get(subscription.id)
        assert stored.status == SubscriptionStatus.PAST_DUE
        assert stored.dunning_attempts == 1

    @pytest.mark.asyncio
    async def test_cancelled_subscription_rejected(self, subscription_service, billing_details):
        subscription = await _subscribe(subscription_service, billing_details)
        await subscription_service.cancel(subscription.id, now=T0)

        with pytest.raises(InvalidSubscriptionStateError):
            await subscription_service.collect_payment(subscription.id, now=PERIOD_END)


class TestRenewalSweep:
    @pytest.mark.asyncio
    async def test_due_subscription_is_charged_and_renewed(
        self, subscription_service, billing_details, stcpay_gateway
    ):
        subscription = await _subscribe(subscription_service, billing_details)

        summary = await subscription_service.run_renewal_sweep(now=PERIOD_END + timedelta(hours=1))

        assert summary == {"due": 1, "renewed": 1, "failed": 0, "skipped": 0}
        renewed = await subscription_service.get(subscription.id)
        assert renewed.current_period_start == PERIOD_END
        assert renewed.current_period_end == BillingCycle.MONTHLY.next_period_end(PERIOD_END)
        assert len(stcpay_gateway.charges) == 2

    @pytest.mark.asyncio
    async def test_not_yet_due_is_untouched(self, subscription_service, billing_details, stcpay_gateway):
        await _subscribe(subscription_service, billing_details)

        summary = await subscription_service.run_renewal_sweep(now=PERIOD_END - timedelta(minutes=1))

        assert summary["due"] == 0
        assert len(stcpay_gateway.charges) == 1

    @pytest.mark.asyncio
    async def test_failed_renewal_is_not_recharged_in_same_period(
        self, subscription_service, billing_details, stcpay_gateway
    ):
        subscription = await _subscribe(subscription_service, billing_details)
        stcpay_gateway.payment_results.append(declined("insufficient funds"))

        first = await subscription_service.run_renewal_sweep(now=PERIOD_END + timedelta(hours=1))
        second = await subscription_service.run_renewal_sweep(now=PERIOD_END + timedelta(hours=2))

        assert first["failed"] == 1
        assert second == {"due": 1, "renewed": 0, "failed": 0, "skipped": 1}
        stored = await subscription_service.get(subscription.id)
        assert stored.status == SubscriptionStatus.PAST_DUE
        assert len(stcpay_gateway.charges) == 2

    @pytest.mark.asyncio
    async def test_auto_billing_provider_skipped(self, subscription_service, billing_details, stripe_gateway):
        await _subscribe(subscription_service, billing_details, provider="stripe")

        summary = await subscription_service.run_renewal_sweep(now=PERIOD_END + timedelta(hours=1))

        assert summary["skipped"] == 1
        assert stripe_gateway.charges == []


class TestChangePlan:
    @pytest.mark.asyncio
    async def test_upgrade_charges_proration(self, subscription_service, billing_details, stcpay_gateway, notifications):
        subscription = await _subscribe(subscription_service, billing_details)
        # Halfway through a 31-day period
        midway = T0 + timedelta(days=15, hours=12)

        changed = await subscription_service.change_plan(subscription.id, "pro", now=midway)

        assert changed.plan_id == "pro"
        assert stcpay_gateway.charges[-1].amount == Decimal("15.00")
        plan_changed = [event for event in notifications.events if event.name == events.SUBSCRIPTION_PLAN_CHANGED]
        assert plan_changed[0].data["proration_amount"] == "15.00"
        assert stcpay_gateway.charges[-1].customer_id is None

    @pytest.mark.asyncio
    async def test_upgrade_on_customer_mandate_charges_that_customer(
        self, subscription_service, billing_details, stripe_gateway
    ):
        stripe_gateway.customer_id = "cus_123"
        subscription = await _subscribe(subscription_service, billing_details, provider="stripe")

        await subscription_service.change_plan(subscription.id, "pro", now=T0 + timedelta(days=15, hours=12))

        [proration] = stripe_gateway.charges
        assert proration.customer_id == "cus_123"
        assert proration.amount == Decimal("15.00")

    @pytest.mark.asyncio
    async def test_downgrade_records_credit_without_charge(
        self, subscription_service, billing_details, stcpay_gateway, notifications
    ):
        subscription = await subscription_service.subscribe("m_1", "pro", "monthly", billing_details, "stcpay", now=T0)

        await subscription_service.change_plan(subscription.id, "basic", now=T0 + timedelta(days=15, hours=12))

        assert len(stcpay_gateway.charges) == 1
        plan_changed = [event for event in notifications.events if event.name == events.SUBSCRIPTION_PLAN_CHANGED]
        assert plan_changed[0].data["proration_amount"] == "-15.00"

    @pytest.mark.asyncio
    async def test_declined_proration_leaves_plan_unchanged(
        self, subscription_service, billing_details, stcpay_gateway
    ):
        subscription = await _subscribe(subscription_service, billing_details)
        stcpay_gateway.payment_results.append(declined())

        with pytest.raises(PaymentProcessingError):
            await subscription_service.change_plan(subscription.id, "pro", now=T0 + timedelta(days=10))

        assert (await subscription_service.get(subscription.id)).plan_id == "basic"

    @pytest.mark.asyncio
    async def test_terminal_subscription_rejected(self, subscription_service, billing_details):
        subscription = await _subscribe(subscription_service, billing_details)
        await subscription_service.terminate(subscription.id, now=T0)

        with pytest.raises(InvalidSubscriptionStateError):
            await subscription_service.change_plan(subscription.id, "pro", now=T0)


class TestCancelAndTerminate:
    @pytest.mark.asyncio
    async def test_cancel_stops_mandate(self, subscription_service, billing_details, stcpay_gateway):
        subscription = await _subscribe(subscription_service, billing_details)

        cancelled = await subscription_service.cancel(subscription.id, reason="closing store", now=T0)

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.end_date == PERIOD_END
        assert stcpay_gateway.cancelled == [subscription.provider_subscription_id]

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, subscription_service, billing_details, stcpay_gateway):
        subscription = await _subscribe(subscription_service, billing_details)
        await subscription_service.cancel(subscription.id, now=T0)
        await subscription_service.cancel(subscription.id, now=T0)
        assert len(stcpay_gateway.cancelled) == 1

    @pytest.mark.asyncio
    async def test_provider_refusal_keeps_subscription(self, subscription_service, billing_details, stcpay_gateway):
        subscription = await _subscribe(subscription_service, billing_details)
        stcpay_gateway.cancel_error = SubscriptionManagementError("stcpay", "mandate locked")

        with pytest.raises(SubscriptionManagementError):
            await subscription_service.cancel(subscription.id, now=T0)

        assert (await subscription_service.get(subscription.id)).status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_suspension_sweep_terminates_after_grace_period(
        self, subscription_service, billing_details, stcpay_gateway
    ):
        subscription = await _subscribe(subscription_service, billing_details)
        stcpay_gateway.payment_results.append(declined())
        await subscription_service.collect_payment(subscription.id, now=PERIOD_END)
        await subscription_service.suspend(subscription.id, now=PERIOD_END)
        stcpay_gateway.cancel_error = GatewayIntegrationError("stcpay", "unavailable")

        early = await subscription_service.run_suspension_sweep(now=PERIOD_END + timedelta(days=29))
        late = await subscription_service.run_suspension_sweep(now=PERIOD_END + timedelta(days=30))

        assert early == 0
        assert late == 1
        assert (await subscription_service.get(subscription.id)).status == SubscriptionStatus.TERMINATED


class TestWebhookOutcomes:
    @pytest.mark.asyncio
    async def test_provider_invoice_activates_and_adopts_period(
        self, subscription_service, billing_details, stripe_gateway
    ):
        stripe_gateway.mandate_status = "incomplete"
        subscription = await _subscribe(subscription_service, billing_details, provider="stripe")
        period_start = T0 + timedelta(minutes=5)
        period_end = period_start + timedelta(days=31)

        updated = await subscription_service.apply_webhook_outcome(
            "stripe",
            WebhookOutcome(
                status=PaymentStatus.SUCCESSFUL,
                provider_transaction_id="pi_1",
                provider_subscription_id=subscription.provider_subscription_id,
                period_start=period_start,
                period_end=period_end,
            ),
            now=T0 + timedelta(minutes=5),
        )

        assert updated.status == SubscriptionStatus.ACTIVE
        assert updated.current_period_end == period_end
        assert updated.payment_history[-1].amount == Decimal("30.00")

    @pytest.mark.asyncio
    async def test_provider_cancellation_terminates(self, subscription_service, billing_details):
        subscription = await _subscribe(subscription_service, billing_details)

        updated = await subscription_service.apply_webhook_outcome(
            "stcpay",
            WebhookOutcome(provider_subscription_id=subscription.provider_subscription_id, subscription_cancelled=True),
            now=T0,
        )

        assert updated.status == SubscriptionStatus.TERMINATED

    @pytest.mark.asyncio
    async def test_failure_moves_to_past_due(self, subscription_service, billing_details):
        subscription = await _subscribe(subscription_service, billing_details)

        updated = await subscription_service.apply_webhook_outcome(
            "stcpay",
            WebhookOutcome(
                status=PaymentStatus.FAILED,
                provider_subscription_id=subscription.provider_subscription_id,
                error_message="card expired",
            ),
            now=PERIOD_END,
        )

        assert updated.status == SubscriptionStatus.PAST_DUE
        assert updated.payment_history[-1].reason == "card expired"

    @pytest.mark.asyncio
    async def test_repeated_failure_is_applied_once(self, subscription_service, billing_details, notifications):
        subscription = await _subscribe(subscription_service, billing_details)
        outcome = WebhookOutcome(
            status=PaymentStatus.FAILED,
            provider_transaction_id="txn_r1",
            provider_subscription_id=subscription.provider_subscription_id,
            error_message="card expired",
        )

        await subscription_service.apply_webhook_outcome("stcpay", outcome, now=PERIOD_END)
        updated = await subscription_service.apply_webhook_outcome("stcpay", outcome, now=PERIOD_END)

        assert updated.dunning_attempts == 1
        assert [record.provider_transaction_id for record in updated.payment_history if not record.success] == [
            "txn_r1"
        ]
        assert notifications.names.count(events.SUBSCRIPTION_PAYMENT_FAILED) == 1

    @pytest.mark.asyncio
    async def test_success_after_failure_of_same_charge_is_applied(self, subscription_service, billing_details):
        subscription = await _subscribe(subscription_service, billing_details)
        failed = WebhookOutcome(
            status=PaymentStatus.FAILED,
            provider_transaction_id="pi_7",
            provider_subscription_id=subscription.provider_subscription_id,
        )
        await subscription_service.apply_webhook_outcome("stcpay", failed, now=PERIOD_END)

        updated = await subscription_service.apply_webhook_outcome(
            "stcpay",
            WebhookOutcome(
                status=PaymentStatus.SUCCESSFUL,
                provider_transaction_id="pi_7",
                provider_subscription_id=subscription.provider_subscription_id,
            ),
            now=PERIOD_END + timedelta(hours=2),
        )

        assert updated.status == SubscriptionStatus.ACTIVE
        assert updated.dunning_attempts == 0

    @pytest.mark.asyncio
    async def test_unknown_mandate_ignored(self, subscription_service):
        outcome = WebhookOutcome(status=PaymentStatus.SUCCESSFUL, provider_subscription_id="mandate_unknown")
        assert await subscription_service.apply_webhook_outcome("stcpay", outcome) is None


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_version_conflict_is_retried(self, subscription_service, billing_details, subscription_repository):
        subscription = await _subscribe(subscription_service, billing_details)
        subscription_repository.concurrent_writes = 2

        updated = await subscription_service.apply_payment_failure(subscription.id, "declined", now=PERIOD_END)

        assert updated.status == SubscriptionStatus.PAST_DUE
        assert updated.dunning_attempts == 1

    @pytest.mark.asyncio
    async def test_persistent_conflict_raises(self, subscription_service, billing_details, subscription_repository):
        subscription = await _subscribe(subscription_service, billing_details)
        subscription_repository.concurrent_writes = SubscriptionService.MAX_CONFLICT_RETRIES + 1

        with pytest.raises(ConcurrencyConflictError):
            await subscription_service.apply_payment_failure(subscription.id, "declined", now=PERIOD_END)


class TestPlanPriceChanged:
    OLD_BASIC = [
        PricingTier(amount=Decimal("30.00"), currency="SAR", cycle=BillingCycle.MONTHLY),
        PricingTier(amount=Decimal("80.00"), currency="SAR", cycle=BillingCycle.QUARTERLY),
    ]

    @pytest.mark.asyncio
    async def test_live_subscribers_are_notified(self, subscription_service, billing_details, notifications):
        monthly = await _subscribe(subscription_service, billing_details, merchant_id="m_1")
        quarterly = await subscription_service.subscribe(
            "m_2", "basic", "quarterly", billing_details, "stcpay", now=T0
        )
        await subscription_service.subscribe("m_3", "pro", "monthly", billing_details, "stcpay", now=T0)
        cancelled = await _subscribe(subscription_service, billing_details, merchant_id="m_4")
        await subscription_service.cancel(cancelled.id, now=T0)
        new_pricing = [
            PricingTier(amount=Decimal("35.00"), currency="SAR", cycle=BillingCycle.MONTHLY),
            PricingTier(amount=Decimal("90.00"), currency="SAR", cycle=BillingCycle.QUARTERLY),
        ]

        notified = await subscription_service.handle_plan_price_changed("basic", self.OLD_BASIC, new_pricing, now=T0)

        assert notified == 2
        price_events = {
            event.subscription_id: event
            for event in notifications.events
            if event.name == events.SUBSCRIPTION_PLAN_PRICE_CHANGED
        }
        assert set(price_events) == {monthly.id, quarterly.id}
        assert price_events[monthly.id].data == {
            "plan_id": "basic",
            "billing_cycle": "monthly",
            "old_amount": "30.00",
            "new_amount": "35.00",
            "currency": "SAR",
            "effective_from": PERIOD_END.isoformat(),
        }
        assert price_events[quarterly.id].data["new_amount"] == "90.00"
        assert price_events[monthly.id].new_status == SubscriptionStatus.ACTIVE.value
        # Subscriptions are left untouched
        assert (await subscription_service.get(monthly.id)).version == monthly.version

    @pytest.mark.asyncio
    async def test_unchanged_cycle_is_not_notified(self, subscription_service, billing_details, notifications):
        await _subscribe(subscription_service, billing_details)
        new_pricing = [
            PricingTier(amount=Decimal("30.00"), currency="SAR", cycle=BillingCycle.MONTHLY),
            PricingTier(amount=Decimal("85.00"), currency="SAR", cycle=BillingCycle.QUARTERLY),
        ]

        assert await subscription_service.handle_plan_price_changed("basic", self.OLD_BASIC, new_pricing) == 0
        assert events.SUBSCRIPTION_PLAN_PRICE_CHANGED not in notifications.names

    @pytest.mark.asyncio
    async def test_dropped_cycle_is_notified_without_new_amount(
        self, subscription_service, billing_details, notifications
    ):
        await _subscribe(subscription_service, billing_details)
        new_pricing = [PricingTier(amount=Decimal("80.00"), currency="SAR", cycle=BillingCycle.QUARTERLY)]

        assert await subscription_service.handle_plan_price_changed("basic", self.OLD_BASIC, new_pricing) == 1
        assert notifications.events[-1].data["new_amount"] is None
        assert notifications.events[-1].data["currency"] == "SAR"
