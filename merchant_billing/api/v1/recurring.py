"""Provider-side recurring mandate endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from merchant_billing.api.deps import get_recurring_billing_service
from merchant_billing.gateways.base import RecurringPaymentDetails, RecurringRequest
from merchant_billing.schemas.subscription import RecurringCreate, RecurringDetailsResponse
from merchant_billing.services.recurring_billing_service import RecurringBillingService

router = APIRouter()


@router.post("", response_model=RecurringDetailsResponse, status_code=status.HTTP_201_CREATED)
async def create_recurring_payment(
    data: RecurringCreate,
    recurring: Annotated[RecurringBillingService, Depends(get_recurring_billing_service)],
) -> RecurringPaymentDetails:
    request = RecurringRequest(**data.model_dump(exclude={"provider"}))
    return await recurring.setup_recurring_payment(data.provider, request)


@router.get("/{provider}/{provider_subscription_id}", response_model=RecurringDetailsResponse)
async def get_recurring_payment(
    provider: str,
    provider_subscription_id: str,
    recurring: Annotated[RecurringBillingService, Depends(get_recurring_billing_service)],
) -> RecurringPaymentDetails:
    return await recurring.get_recurring_payment_details(provider, provider_subscription_id)


@router.delete("/{provider}/{provider_subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_recurring_payment(
    provider: str,
    provider_subscription_id: str,
    recurring: Annotated[RecurringBillingService, Depends(get_recurring_billing_service)],
) -> None:
    await recurring.cancel_recurring_payment(provider, provider_subscription_id)
