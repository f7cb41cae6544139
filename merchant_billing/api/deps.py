"""API dependencies: repositories and services bound to the request's session."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_billing.config import settings
from merchant_billing.database import get_db
from merchant_billing.repositories.sql import (
    SqlPlanRepository,
    SqlSubscriptionRepository,
    SqlTransactionLogRepository,
)
from merchant_billing.services.dunning_service import DunningService
from merchant_billing.services.gateway_service import GatewayService, gateway_service
from merchant_billing.services.ledger_service import LedgerService
from merchant_billing.services.notification_service import notification_service
from merchant_billing.services.payment_service import PaymentService
from merchant_billing.services.recurring_billing_service import RecurringBillingService
from merchant_billing.services.subscription_service import SubscriptionService
from merchant_billing.services.webhook_service import WebhookService


def get_gateway_service() -> GatewayService:
    return gateway_service


async def get_ledger_service(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> LedgerService:
    return LedgerService(SqlTransactionLogRepository(db))


async def get_payment_service(
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
    gateways: Annotated[GatewayService, Depends(get_gateway_service)],
) -> PaymentService:
    return PaymentService(ledger, gateways)


async def get_subscription_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    payments: Annotated[PaymentService, Depends(get_payment_service)],
) -> SubscriptionService:
    return SubscriptionService(
        SqlSubscriptionRepository(db),
        SqlPlanRepository(db),
        payments,
        notifications=notification_service,
        config=settings,
    )


async def get_recurring_billing_service(
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
    gateways: Annotated[GatewayService, Depends(get_gateway_service)],
    subscriptions: Annotated[SubscriptionService, Depends(get_subscription_service)],
) -> RecurringBillingService:
    dunning = DunningService(ledger, subscriptions, config=settings)
    return RecurringBillingService(ledger, gateways, dunning=dunning, config=settings)


async def get_webhook_service(
    gateways: Annotated[GatewayService, Depends(get_gateway_service)],
    payments: Annotated[PaymentService, Depends(get_payment_service)],
    recurring: Annotated[RecurringBillingService, Depends(get_recurring_billing_service)],
) -> WebhookService:
    return WebhookService(gateways, payments, recurring)
