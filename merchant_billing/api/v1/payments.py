"""Payment endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from merchant_billing.api.deps import get_payment_service
from merchant_billing.models.transaction_log import TransactionLog
from merchant_billing.schemas.payment import RefundCreate, SaleCreate, TransactionLogResponse
from merchant_billing.services.payment_service import PaymentService

router = APIRouter()


@router.post("/sales", response_model=TransactionLogResponse, status_code=status.HTTP_201_CREATED)
async def create_sale(
    sale: SaleCreate,
    payments: Annotated[PaymentService, Depends(get_payment_service)],
) -> TransactionLog:
    """Charge a one-time sale. A declined charge is returned with status ``failed``."""
    return await payments.process_sale(
        merchant_id=sale.merchant_id,
        provider=sale.provider,
        amount=sale.amount,
        currency=sale.currency,
        payment_method_token=sale.payment_method_token,
        order_id=sale.order_id,
        description=sale.description,
        metadata=sale.metadata,
    )


@router.post("/refunds", response_model=TransactionLogResponse, status_code=status.HTTP_201_CREATED)
async def create_refund(
    refund: RefundCreate,
    payments: Annotated[PaymentService, Depends(get_payment_service)],
) -> TransactionLog:
    """Refund all or part of a successful sale."""
    return await payments.refund_sale(
        provider=refund.provider,
        provider_transaction_id=refund.provider_transaction_id,
        amount=refund.amount,
        reason=refund.reason,
    )
