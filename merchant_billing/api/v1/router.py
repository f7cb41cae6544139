"""Main API router that includes all endpoint routers."""

from fastapi import APIRouter

from merchant_billing.api.v1 import payments, recurring, subscriptions, webhooks

api_router = APIRouter()

# Payments
api_router.include_router(payments.router, prefix="/payments", tags=["Payments"])

# Subscriptions
api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["Subscriptions"])

# Recurring mandates
api_router.include_router(recurring.router, prefix="/recurring", tags=["Recurring"])

# Webhooks
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
