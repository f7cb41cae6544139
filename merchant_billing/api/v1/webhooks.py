"""Webhook endpoints for payment gateways."""

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request, status

from merchant_billing.api.deps import get_webhook_service
from merchant_billing.services.webhook_service import WebhookService

router = APIRouter()


@router.post("/{provider}", status_code=status.HTTP_200_OK)
async def receive_webhook(
    provider: str,
    request: Request,
    webhooks: Annotated[WebhookService, Depends(get_webhook_service)],
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    stcpay_signature: str | None = Header(None, alias="X-STCPay-Signature"),
) -> dict:
    """Verify and record a provider notification.

    PayFast carries its signature inside the form body, so no header applies.
    """
    # Raw body for signature verification
    payload = await request.body()
    signature = stripe_signature or stcpay_signature
    receipt = await webhooks.handle(provider, payload, signature)
    return {
        "received": True,
        "event_type": receipt.event_type,
        "event_id": receipt.event_id,
        "dispatched": receipt.dispatched,
    }
