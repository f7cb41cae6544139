"""Celery background tasks.

This module contains the background tasks for:
- Renewal, dunning and suspension sweeps
- Webhook follow-ups handed off by the webhook entrypoint
- Plan price-change notifications
"""

import asyncio
import logging
from dataclasses import dataclass

from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_billing.database import get_db_context
from merchant_billing.domain.payment_state import PaymentStatus
from merchant_billing.domain.plan import PricingTier
from merchant_billing.gateways.base import WebhookOutcome
from merchant_billing.repositories.sql import (
    SqlPlanRepository,
    SqlSubscriptionRepository,
    SqlTransactionLogRepository,
)
from merchant_billing.services.dunning_service import DunningService
from merchant_billing.services.gateway_service import gateway_service
from merchant_billing.services.ledger_service import LedgerService
from merchant_billing.services.notification_service import notification_service
from merchant_billing.services.payment_service import PaymentService
from merchant_billing.services.recurring_billing_service import RecurringBillingService
from merchant_billing.services.subscription_service import SubscriptionService
from merchant_billing.worker import celery_app  # noqa: F401  registers the configured app as current

logger = logging.getLogger(__name__)


def run_async(coro):
    """Run async function in sync context."""
    loop = asyncio.get_event_loop()
    return loop.run_until_complete(coro)


@dataclass
class _Services:
    subscriptions: SubscriptionService
    dunning: DunningService
    recurring: RecurringBillingService


def _build_services(db: AsyncSession) -> _Services:
    ledger = LedgerService(SqlTransactionLogRepository(db))
    payments = PaymentService(ledger, gateway_service)
    subscriptions = SubscriptionService(
        SqlSubscriptionRepository(db),
        SqlPlanRepository(db),
        payments,
        notifications=notification_service,
    )
    dunning = DunningService(ledger, subscriptions)
    recurring = RecurringBillingService(ledger, gateway_service, dunning=dunning)
    return _Services(subscriptions=subscriptions, dunning=dunning, recurring=recurring)


# ==================== SWEEPS ====================


@shared_task(bind=True, max_retries=3)
def run_renewal_sweep(self):
    """Charge subscriptions whose billing period has ended."""
    try:
        summary = run_async(_run_renewal_sweep())
        return {"status": "success", **summary}
    except Exception as exc:
        self.retry(exc=exc, countdown=300)


async def _run_renewal_sweep() -> dict:
    async with get_db_context() as db:
        return await _build_services(db).subscriptions.run_renewal_sweep()


@shared_task(bind=True, max_retries=3)
def run_dunning_sweep(self):
    """Retry or escalate past-due subscriptions."""
    try:
        summary = run_async(_run_dunning_sweep())
        return {"status": "success", **summary}
    except Exception as exc:
        self.retry(exc=exc, countdown=600)


async def _run_dunning_sweep() -> dict:
    async with get_db_context() as db:
        return await _build_services(db).dunning.run_dunning_sweep()


@shared_task(bind=True, max_retries=3)
def run_suspension_sweep(self):
    """Terminate subscriptions suspended past the grace period."""
    try:
        terminated = run_async(_run_suspension_sweep())
        return {"status": "success", "terminated": terminated}
    except Exception as exc:
        self.retry(exc=exc, countdown=600)


async def _run_suspension_sweep() -> int:
    async with get_db_context() as db:
        return await _build_services(db).subscriptions.run_suspension_sweep()


# ==================== WEBHOOK FOLLOW-UPS ====================


@shared_task(bind=True, max_retries=3)
def process_webhook_outcome(self, provider: str, outcome: dict):
    """Apply a recorded webhook outcome to its subscription, then dun on failure."""
    try:
        run_async(_process_webhook_outcome(provider, WebhookOutcome.from_dict(outcome)))
        return {"status": "success", "provider": provider}
    except Exception as exc:
        self.retry(exc=exc, countdown=60)


async def _process_webhook_outcome(provider: str, outcome: WebhookOutcome) -> None:
    """Apply the outcome, then dun on failure. An outcome already applied is not applied again."""
    async with get_db_context() as db:
        services = _build_services(db)
        subscription = await services.subscriptions.apply_webhook_outcome(provider, outcome)
        if subscription is None:
            return
        if outcome.status == PaymentStatus.FAILED and outcome.provider_subscription_id:
            logger.info(f"Triggering dunning for failed renewal of {provider} mandate {outcome.provider_subscription_id}")
            await services.recurring.process_failed_renewal(provider, outcome.provider_subscription_id)


# ==================== PLAN EVENTS ====================


@shared_task(bind=True, max_retries=3)
def handle_plan_price_changed(self, plan_id: str, old_pricing: list[dict], new_pricing: list[dict]):
    """Notify live subscribers of a plan that its price changed."""
    try:
        notified = run_async(
            _handle_plan_price_changed(
                plan_id,
                [PricingTier.from_dict(tier) for tier in old_pricing],
                [PricingTier.from_dict(tier) for tier in new_pricing],
            )
        )
        return {"status": "success", "plan_id": plan_id, "notified": notified}
    except Exception as exc:
        self.retry(exc=exc, countdown=300)


async def _handle_plan_price_changed(
    plan_id: str, old_pricing: list[PricingTier], new_pricing: list[PricingTier]
) -> int:
    async with get_db_context() as db:
        return await _build_services(db).subscriptions.handle_plan_price_changed(plan_id, old_pricing, new_pricing)
