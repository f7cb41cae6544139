"""Merchant subscription endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from merchant_billing.api.deps import get_subscription_service
from merchant_billing.domain.subscription import BillingDetails
from merchant_billing.schemas.subscription import (
    CancelRequest,
    PlanChangeRequest,
    SubscriptionCreate,
    SubscriptionResponse,
)
from merchant_billing.services.subscription_service import SubscriptionService

router = APIRouter()


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    data: SubscriptionCreate,
    subscriptions: Annotated[SubscriptionService, Depends(get_subscription_service)],
) -> SubscriptionResponse:
    """Subscribe a merchant to a plan and collect the first period."""
    subscription = await subscriptions.subscribe(
        merchant_id=data.merchant_id,
        plan_id=data.plan_id,
        billing_cycle=data.billing_cycle,
        billing_details=BillingDetails(**data.billing_details.model_dump()),
        provider=data.provider,
    )
    return SubscriptionResponse.from_domain(subscription)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: str,
    subscriptions: Annotated[SubscriptionService, Depends(get_subscription_service)],
) -> SubscriptionResponse:
    return SubscriptionResponse.from_domain(await subscriptions.get(subscription_id))


@router.post("/{subscription_id}/change-plan", response_model=SubscriptionResponse)
async def change_plan(
    subscription_id: str,
    data: PlanChangeRequest,
    subscriptions: Annotated[SubscriptionService, Depends(get_subscription_service)],
) -> SubscriptionResponse:
    """Move to another plan; upgrades are charged the prorated difference immediately."""
    subscription = await subscriptions.change_plan(subscription_id, data.new_plan_id, new_cycle=data.new_cycle)
    return SubscriptionResponse.from_domain(subscription)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: str,
    subscriptions: Annotated[SubscriptionService, Depends(get_subscription_service)],
    data: CancelRequest | None = None,
) -> SubscriptionResponse:
    """Cancel; access continues until the end of the paid period."""
    subscription = await subscriptions.cancel(subscription_id, reason=data.reason if data else None)
    return SubscriptionResponse.from_domain(subscription)
