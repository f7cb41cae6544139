"""Transaction ledger service.

Every payment attempt gets a row, created Pending before the provider is
called and moved to a terminal status once the outcome is known.
"""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from merchant_billing.core.exceptions import NotFoundError, ValidationError
from merchant_billing.domain.payment_state import PaymentStatus, TransactionType, is_redundant_update
from merchant_billing.models.transaction_log import TransactionLog
from merchant_billing.repositories.base import TransactionLogRepository

logger = logging.getLogger(__name__)


def assert_positive_amount(amount: Decimal) -> None:
    if amount <= 0:
        raise ValidationError(f"Ledger amount must be positive, got {amount}")


class LedgerService:
    """Append/update log of payment attempts."""

    def __init__(self, repository: TransactionLogRepository):
        self.repository = repository

    async def create_log(
        self,
        merchant_id: str,
        provider: str,
        amount: Decimal,
        currency: str,
        transaction_type: str | TransactionType,
        order_id: str | None = None,
        provider_subscription_id: str | None = None,
        status: str | PaymentStatus = PaymentStatus.PENDING,
        provider_transaction_id: str | None = None,
        provider_response: dict | None = None,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> TransactionLog:
        """Insert a ledger row.

        Foreground callers create rows Pending and never know the provider
        transaction id yet. Webhook-driven creation passes the id and status
        the provider already reported.
        """
        assert_positive_amount(amount)
        at = now or datetime.now(UTC)
        entry = TransactionLog(
            id=uuid.uuid4(),
            merchant_id=merchant_id,
            order_id=order_id,
            provider_subscription_id=provider_subscription_id,
            provider_transaction_id=provider_transaction_id,
            provider=str(getattr(provider, "value", provider)),
            amount=amount,
            currency=currency.upper(),
            status=PaymentStatus(status).value,
            transaction_type=TransactionType(transaction_type).value,
            error_message=error_message,
            provider_response=provider_response,
            created_at=at,
            updated_at=at,
        )
        stored = await self.repository.add(entry)
        logger.info(
            f"Ledger {stored.id}: {stored.transaction_type} {stored.amount} {stored.currency} "
            f"via {stored.provider} [{stored.status}]"
        )
        return stored

    async def update_status(
        self,
        log_id: UUID,
        status: str | PaymentStatus,
        provider_response: dict | None = None,
        error_message: str | None = None,
        provider_transaction_id: str | None = None,
        now: datetime | None = None,
    ) -> TransactionLog:
        """Move a row to ``status``.

        Re-applying successful or refunded to a row already in that status
        is a no-op.

        Raises:
            NotFoundError: If the row does not exist
        """
        entry = await self.repository.get(log_id)
        if entry is None:
            raise NotFoundError("Transaction log", str(log_id))

        target = PaymentStatus(status)
        if is_redundant_update(entry.status, target):
            logger.info(f"Ledger {entry.id} already {target.value}; skipping duplicate update")
            return entry

        entry.status = target.value
        if provider_response is not None:
            entry.provider_response = provider_response
        if error_message is not None:
            entry.error_message = error_message
        if provider_transaction_id and not entry.provider_transaction_id:
            entry.provider_transaction_id = provider_transaction_id
        entry.updated_at = now or datetime.now(UTC)

        stored = await self.repository.save(entry)
        logger.info(f"Ledger {stored.id} -> {stored.status}")
        return stored

    async def get(self, log_id: UUID) -> TransactionLog:
        entry = await self.repository.get(log_id)
        if entry is None:
            raise NotFoundError("Transaction log", str(log_id))
        return entry

    async def find_by_provider_transaction_id(
        self, provider: str, provider_transaction_id: str
    ) -> TransactionLog | None:
        return await self.repository.find_by_provider_transaction_id(
            str(getattr(provider, "value", provider)), provider_transaction_id
        )

    async def find_latest_failed_by_subscription(self, provider_subscription_id: str) -> TransactionLog | None:
        return await self.repository.find_latest_failed_by_subscription(provider_subscription_id)

    async def find_all_by_subscription(self, provider_subscription_id: str) -> list[TransactionLog]:
        return await self.repository.find_all_by_subscription(provider_subscription_id)
