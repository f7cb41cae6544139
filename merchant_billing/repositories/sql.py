"""SQLAlchemy implementations of the repository contracts."""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_billing.core.exceptions import ConcurrencyConflictError, ValidationError
from merchant_billing.domain.payment_state import PaymentStatus
from merchant_billing.domain.plan import BillingCycle, PricingTier, SubscriptionPlan
from merchant_billing.domain.subscription import (
    BillingDetails,
    MerchantSubscription,
    PaymentRecord,
    SubscriptionStatus,
)
from merchant_billing.models.subscription import MerchantSubscriptionRecord, SubscriptionPlanRecord
from merchant_billing.models.transaction_log import TransactionLog
from merchant_billing.repositories.base import (
    PlanRepository,
    SubscriptionRepository,
    TransactionLogRepository,
)

logger = logging.getLogger(__name__)

LIVE_EXCLUDED_STATUSES = (SubscriptionStatus.CANCELLED.value, SubscriptionStatus.TERMINATED.value)


class SqlTransactionLogRepository(TransactionLogRepository):
    """Ledger rows in PostgreSQL."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, entry: TransactionLog) -> TransactionLog:
        key = (entry.provider, entry.provider_transaction_id)
        self.db.add(entry)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self._existing_duplicate(*key)
            if existing is None:
                raise
            return existing
        await self.db.refresh(entry)
        return entry

    async def save(self, entry: TransactionLog) -> TransactionLog:
        key = (entry.provider, entry.provider_transaction_id)
        entry = await self.db.merge(entry)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self._existing_duplicate(*key)
            if existing is None:
                raise
            return existing
        await self.db.refresh(entry)
        return entry

    async def get(self, log_id: UUID) -> TransactionLog | None:
        return await self.db.get(TransactionLog, log_id)

    async def find_by_provider_transaction_id(
        self, provider: str, provider_transaction_id: str
    ) -> TransactionLog | None:
        result = await self.db.execute(
            select(TransactionLog).where(
                TransactionLog.provider == provider,
                TransactionLog.provider_transaction_id == provider_transaction_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_latest_failed_by_subscription(self, provider_subscription_id: str) -> TransactionLog | None:
        result = await self.db.execute(
            select(TransactionLog)
            .where(
                TransactionLog.provider_subscription_id == provider_subscription_id,
                TransactionLog.status == PaymentStatus.FAILED.value,
            )
            .order_by(TransactionLog.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_all_by_subscription(self, provider_subscription_id: str) -> list[TransactionLog]:
        result = await self.db.execute(
            select(TransactionLog)
            .where(TransactionLog.provider_subscription_id == provider_subscription_id)
            .order_by(TransactionLog.created_at.asc())
        )
        return list(result.scalars().all())

    async def _existing_duplicate(self, provider: str, provider_transaction_id: str | None) -> TransactionLog | None:
        if not provider_transaction_id:
            return None
        existing = await self.find_by_provider_transaction_id(provider, provider_transaction_id)
        if existing is None:
            return None
        logger.warning(
            f"Duplicate ledger write for {provider}/{provider_transaction_id} ignored; "
            f"keeping log {existing.id}"
        )
        return existing


# ==================== SUBSCRIPTIONS ====================


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _history_to_json(history: list[PaymentRecord]) -> list[dict]:
    return [
        {
            "occurred_at": record.occurred_at.isoformat(),
            "success": record.success,
            "amount": str(record.amount) if record.amount is not None else None,
            "currency": record.currency,
            "provider_transaction_id": record.provider_transaction_id,
            "reason": record.reason,
        }
        for record in history
    ]


def _history_from_json(rows: list[dict]) -> list[PaymentRecord]:
    return [
        PaymentRecord(
            occurred_at=_dt(row["occurred_at"]),
            success=row["success"],
            amount=Decimal(row["amount"]) if row.get("amount") is not None else None,
            currency=row.get("currency"),
            provider_transaction_id=row.get("provider_transaction_id"),
            reason=row.get("reason"),
        )
        for row in rows or []
    ]


def _record_values(subscription: MerchantSubscription) -> dict:
    details = subscription.billing_details
    return {
        "merchant_id": subscription.merchant_id,
        "plan_id": subscription.plan_id,
        "status": subscription.status.value,
        "billing_cycle": subscription.billing_cycle.value,
        "start_date": subscription.start_date,
        "end_date": subscription.end_date,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "provider": subscription.provider,
        "provider_subscription_id": subscription.provider_subscription_id,
        "billing_details": {
            "payment_method_token": details.payment_method_token,
            "contact_email": details.contact_email,
            "address": details.address,
        },
        "payment_history": _history_to_json(subscription.payment_history),
        "dunning_attempts": subscription.dunning_attempts,
        "last_payment_attempt_at": subscription.last_payment_attempt_at,
        "suspended_at": subscription.suspended_at,
    }


def _to_domain(record: MerchantSubscriptionRecord) -> MerchantSubscription:
    return MerchantSubscription(
        id=str(record.id),
        merchant_id=record.merchant_id,
        plan_id=record.plan_id,
        status=SubscriptionStatus(record.status),
        billing_cycle=BillingCycle(record.billing_cycle),
        billing_details=BillingDetails(**record.billing_details),
        start_date=record.start_date,
        end_date=record.end_date,
        current_period_start=record.current_period_start,
        current_period_end=record.current_period_end,
        provider=record.provider,
        provider_subscription_id=record.provider_subscription_id,
        payment_history=_history_from_json(record.payment_history),
        dunning_attempts=record.dunning_attempts,
        last_payment_attempt_at=record.last_payment_attempt_at,
        suspended_at=record.suspended_at,
        version=record.version,
    )


class SqlSubscriptionRepository(SubscriptionRepository):
    """Subscription aggregates in PostgreSQL with a version column for CAS."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, subscription: MerchantSubscription) -> MerchantSubscription:
        record = MerchantSubscriptionRecord(
            id=uuid.UUID(subscription.id),
            version=subscription.version,
            **_record_values(subscription),
        )
        self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ValidationError(f"Merchant {subscription.merchant_id} already has a live subscription")
        return subscription

    async def save(self, subscription: MerchantSubscription) -> MerchantSubscription:
        result = await self.db.execute(
            update(MerchantSubscriptionRecord)
            .where(
                MerchantSubscriptionRecord.id == uuid.UUID(subscription.id),
                MerchantSubscriptionRecord.version == subscription.version,
            )
            .values(version=subscription.version + 1, **_record_values(subscription))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise ConcurrencyConflictError("Subscription", subscription.id)
        await self.db.commit()
        subscription.version += 1
        return subscription

    async def get(self, subscription_id: str) -> MerchantSubscription | None:
        try:
            key = uuid.UUID(subscription_id)
        except ValueError:
            return None
        result = await self.db.execute(
            select(MerchantSubscriptionRecord)
            .where(MerchantSubscriptionRecord.id == key)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        return _to_domain(record) if record else None

    async def get_by_provider_subscription_id(
        self, provider: str, provider_subscription_id: str
    ) -> MerchantSubscription | None:
        result = await self.db.execute(
            select(MerchantSubscriptionRecord)
            .where(
                MerchantSubscriptionRecord.provider == provider,
                MerchantSubscriptionRecord.provider_subscription_id == provider_subscription_id,
            )
            .order_by(MerchantSubscriptionRecord.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        return _to_domain(record) if record else None

    async def find_live_by_merchant(self, merchant_id: str) -> MerchantSubscription | None:
        result = await self.db.execute(
            select(MerchantSubscriptionRecord).where(
                MerchantSubscriptionRecord.merchant_id == merchant_id,
                MerchantSubscriptionRecord.status.not_in(LIVE_EXCLUDED_STATUSES),
            )
        )
        record = result.scalars().first()
        return _to_domain(record) if record else None

    async def find_live_by_plan(self, plan_id: str, limit: int = 500) -> list[MerchantSubscription]:
        result = await self.db.execute(
            select(MerchantSubscriptionRecord)
            .where(
                MerchantSubscriptionRecord.plan_id == plan_id,
                MerchantSubscriptionRecord.status.not_in(LIVE_EXCLUDED_STATUSES),
            )
            .order_by(MerchantSubscriptionRecord.current_period_end)
            .limit(limit)
        )
        return [_to_domain(record) for record in result.scalars().all()]

    async def find_due_for_renewal(self, before: datetime, limit: int = 500) -> list[MerchantSubscription]:
        result = await self.db.execute(
            select(MerchantSubscriptionRecord)
            .where(
                MerchantSubscriptionRecord.status.in_(
                    [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]
                ),
                MerchantSubscriptionRecord.current_period_end <= before,
            )
            .order_by(MerchantSubscriptionRecord.current_period_end)
            .limit(limit)
        )
        return [_to_domain(record) for record in result.scalars().all()]

    async def find_in_dunning(self, limit: int = 500) -> list[MerchantSubscription]:
        result = await self.db.execute(
            select(MerchantSubscriptionRecord)
            .where(
                MerchantSubscriptionRecord.status == SubscriptionStatus.PAST_DUE.value,
                MerchantSubscriptionRecord.provider_subscription_id.is_not(None),
            )
            .order_by(MerchantSubscriptionRecord.last_payment_attempt_at)
            .limit(limit)
        )
        return [_to_domain(record) for record in result.scalars().all()]

    async def find_suspended_before(self, before: datetime, limit: int = 500) -> list[MerchantSubscription]:
        result = await self.db.execute(
            select(MerchantSubscriptionRecord)
            .where(
                MerchantSubscriptionRecord.status == SubscriptionStatus.SUSPENDED.value,
                MerchantSubscriptionRecord.suspended_at <= before,
            )
            .limit(limit)
        )
        return [_to_domain(record) for record in result.scalars().all()]


class SqlPlanRepository(PlanRepository):
    """Read-only access to the plan catalog."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, plan_id: str) -> SubscriptionPlan | None:
        record = await self.db.get(SubscriptionPlanRecord, plan_id)
        if record is None or not record.is_active:
            return None
        return SubscriptionPlan(
            id=record.id,
            name=record.name,
            plan_type=record.plan_type,
            pricing=[PricingTier.from_dict(tier) for tier in record.pricing],
            features=list(record.features or []),
            usage_limits=dict(record.usage_limits or {}),
            support_tier=record.support_tier,
        )
