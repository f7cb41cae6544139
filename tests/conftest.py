"""Pytest fixtures: in-memory repositories, scripted gateways and wired services."""

import copy
import json
from collections import deque
from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

import pytest

from merchant_billing.config import Settings
from merchant_billing.core.exceptions import ConcurrencyConflictError, ValidationError
from merchant_billing.core.locking import KeyedLock
from merchant_billing.domain.payment_state import PaymentStatus
from merchant_billing.domain.plan import BillingCycle, PricingTier, SubscriptionPlan
from merchant_billing.domain.subscription import (
    RENEWABLE_STATUSES,
    BillingDetails,
    MerchantSubscription,
    SubscriptionStatus,
)
from merchant_billing.gateways.base import (
    ChargeRequest,
    GatewayType,
    PaymentGateway,
    PaymentResult,
    RecurringPaymentDetails,
    RecurringRequest,
    RefundRequest,
    RefundResult,
    RetryRequest,
    WebhookEvent,
    WebhookOutcome,
)
from merchant_billing.models.transaction_log import TransactionLog
from merchant_billing.repositories.base import (
    PlanRepository,
    SubscriptionRepository,
    TransactionLogRepository,
)
from merchant_billing.services.dunning_service import DunningService
from merchant_billing.services.gateway_service import GatewayService
from merchant_billing.services.ledger_service import LedgerService
from merchant_billing.services.notification_service import NotificationService
from merchant_billing.services.payment_service import PaymentService
from merchant_billing.services.recurring_billing_service import RecurringBillingService
from merchant_billing.services.subscription_service import SubscriptionService

STCPAY_WEBHOOK_SECRET = "stcpay_whsec_test"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret_12345"
PAYFAST_PASSPHRASE = "jt7NOE43FZPn"

T0 = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)


# ==================== REPOSITORIES ====================


class InMemoryTransactionLogRepository(TransactionLogRepository):
    """Ledger rows in a dict, with the provider id uniqueness rule."""

    def __init__(self) -> None:
        self.rows: dict[UUID, TransactionLog] = {}

    def _duplicate_of(self, entry: TransactionLog) -> TransactionLog | None:
        if not entry.provider_transaction_id:
            return None
        for row in self.rows.values():
            if (
                row.id != entry.id
                and row.provider == entry.provider
                and row.provider_transaction_id == entry.provider_transaction_id
            ):
                return row
        return None

    async def add(self, entry: TransactionLog) -> TransactionLog:
        existing = self._duplicate_of(entry)
        if existing is not None:
            return existing
        self.rows[entry.id] = entry
        return entry

    async def save(self, entry: TransactionLog) -> TransactionLog:
        existing = self._duplicate_of(entry)
        if existing is not None:
            return existing
        self.rows[entry.id] = entry
        return entry

    async def get(self, log_id: UUID) -> TransactionLog | None:
        return self.rows.get(log_id)

    async def find_by_provider_transaction_id(
        self, provider: str, provider_transaction_id: str
    ) -> TransactionLog | None:
        for row in self.rows.values():
            if row.provider == provider and row.provider_transaction_id == provider_transaction_id:
                return row
        return None

    async def find_latest_failed_by_subscription(self, provider_subscription_id: str) -> TransactionLog | None:
        failed = [
            row
            for row in await self.find_all_by_subscription(provider_subscription_id)
            if row.status == PaymentStatus.FAILED.value
        ]
        return failed[-1] if failed else None

    async def find_all_by_subscription(self, provider_subscription_id: str) -> list[TransactionLog]:
        rows = [row for row in self.rows.values() if row.provider_subscription_id == provider_subscription_id]
        return sorted(rows, key=lambda row: row.created_at)


def _stored_copy(subscription: MerchantSubscription) -> MerchantSubscription:
    clone = copy.deepcopy(subscription)
    clone._pending_events = []
    return clone


class InMemorySubscriptionRepository(SubscriptionRepository):
    """Subscriptions kept as copies, saved with a version compare-and-swap."""

    def __init__(self) -> None:
        self.rows: dict[str, MerchantSubscription] = {}
        self.concurrent_writes = 0
        self.save_calls = 0

    async def add(self, subscription: MerchantSubscription) -> MerchantSubscription:
        if await self.find_live_by_merchant(subscription.merchant_id) is not None:
            raise ValidationError(f"Merchant {subscription.merchant_id} already has a live subscription")
        self.rows[subscription.id] = _stored_copy(subscription)
        return subscription

    async def save(self, subscription: MerchantSubscription) -> MerchantSubscription:
        self.save_calls += 1
        stored = self.rows[subscription.id]
        if self.concurrent_writes > 0:
            # Another process wins the race
            self.concurrent_writes -= 1
            stored.version += 1
        if stored.version != subscription.version:
            raise ConcurrencyConflictError("Subscription", subscription.id)
        subscription.version += 1
        self.rows[subscription.id] = _stored_copy(subscription)
        return subscription

    async def get(self, subscription_id: str) -> MerchantSubscription | None:
        stored = self.rows.get(subscription_id)
        return _stored_copy(stored) if stored else None

    async def get_by_provider_subscription_id(
        self, provider: str, provider_subscription_id: str
    ) -> MerchantSubscription | None:
        for stored in self.rows.values():
            if stored.provider == provider and stored.provider_subscription_id == provider_subscription_id:
                return _stored_copy(stored)
        return None

    async def find_live_by_merchant(self, merchant_id: str) -> MerchantSubscription | None:
        for stored in self.rows.values():
            if stored.merchant_id == merchant_id and not stored.is_terminal:
                return _stored_copy(stored)
        return None

    async def find_live_by_plan(self, plan_id: str, limit: int = 500) -> list[MerchantSubscription]:
        live = [stored for stored in self.rows.values() if stored.plan_id == plan_id and not stored.is_terminal]
        return [_stored_copy(stored) for stored in live[:limit]]

    async def find_due_for_renewal(self, before: datetime, limit: int = 500) -> list[MerchantSubscription]:
        due = [
            stored
            for stored in self.rows.values()
            if stored.status in RENEWABLE_STATUSES and stored.current_period_end <= before
        ]
        return [_stored_copy(stored) for stored in due[:limit]]

    async def find_in_dunning(self, limit: int = 500) -> list[MerchantSubscription]:
        due = [
            stored
            for stored in self.rows.values()
            if stored.status == SubscriptionStatus.PAST_DUE and stored.provider_subscription_id
        ]
        return [_stored_copy(stored) for stored in due[:limit]]

    async def find_suspended_before(self, before: datetime, limit: int = 500) -> list[MerchantSubscription]:
        due = [
            stored
            for stored in self.rows.values()
            if stored.status == SubscriptionStatus.SUSPENDED and stored.suspended_at and stored.suspended_at <= before
        ]
        return [_stored_copy(stored) for stored in due[:limit]]


class InMemoryPlanRepository(PlanRepository):
    def __init__(self, plans: list[SubscriptionPlan]) -> None:
        self.plans = {plan.id: plan for plan in plans}

    async def get(self, plan_id: str) -> SubscriptionPlan | None:
        return self.plans.get(plan_id)


# ==================== GATEWAYS ====================


class FakeGateway(PaymentGateway):
    """Scripted gateway that records every call.

    Queue ``PaymentResult``/``RefundResult`` objects (or exceptions to raise)
    on ``payment_results``, ``retry_results`` and ``refund_results``; an empty
    queue succeeds.
    """

    def __init__(
        self,
        gateway_type: GatewayType = GatewayType.STCPAY,
        auto_renews: bool = False,
        mandate_status: str = "active",
    ) -> None:
        self._gateway_type = gateway_type
        self._auto_renews = auto_renews
        self.mandate_status = mandate_status
        self.payment_results: deque = deque()
        self.retry_results: deque = deque()
        self.refund_results: deque = deque()
        self.charges: list[ChargeRequest] = []
        self.retries: list[RetryRequest] = []
        self.refunds: list[RefundRequest] = []
        self.mandates: list[RecurringRequest] = []
        self.cancelled: list[str] = []
        self.cancel_error: Exception | None = None
        self.customer_id: str | None = None
        self._sequence = 0

    @property
    def gateway_type(self) -> GatewayType:
        return self._gateway_type

    @property
    def bills_renewals_automatically(self) -> bool:
        return self._auto_renews

    def _next_id(self, prefix: str) -> str:
        self._sequence += 1
        return f"{prefix}_{self._gateway_type.value}_{self._sequence}"

    @staticmethod
    def _scripted(queue: deque, default):
        if not queue:
            return default
        item = queue.popleft()
        if isinstance(item, Exception):
            raise item
        return item

    async def process_payment(self, charge: ChargeRequest) -> PaymentResult:
        self.charges.append(charge)
        return self._scripted(
            self.payment_results,
            PaymentResult(status=PaymentStatus.SUCCESSFUL, transaction_id=self._next_id("txn"), raw_response={}),
        )

    async def refund_payment(self, refund: RefundRequest) -> RefundResult:
        self.refunds.append(refund)
        return self._scripted(
            self.refund_results,
            RefundResult(status=PaymentStatus.SUCCESSFUL, refund_id=self._next_id("re"), raw_response={}),
        )

    async def create_recurring_payment(self, request: RecurringRequest) -> RecurringPaymentDetails:
        self.mandates.append(request)
        return RecurringPaymentDetails(provider_subscription_id=self._next_id("mandate"), status=self.mandate_status)

    async def get_recurring_payment_details(self, provider_subscription_id: str) -> RecurringPaymentDetails:
        return RecurringPaymentDetails(
            provider_subscription_id=provider_subscription_id,
            status=self.mandate_status,
            plan_details={"customer_id": self.customer_id} if self.customer_id else {},
        )

    async def cancel_recurring_payment(self, provider_subscription_id: str) -> None:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(provider_subscription_id)

    async def retry_recurring_payment(self, request: RetryRequest) -> PaymentResult:
        self.retries.append(request)
        return self._scripted(
            self.retry_results,
            PaymentResult(status=PaymentStatus.SUCCESSFUL, transaction_id=self._next_id("retry"), raw_response={}),
        )

    def verify_webhook_signature(self, payload: bytes, signature: str | None, secret: str) -> bool:
        return signature == secret

    def parse_webhook_event(self, payload: bytes) -> WebhookEvent:
        data = json.loads(payload)
        return WebhookEvent(gateway=self._gateway_type, event_type=data["type"], payload=data, event_id=data.get("id"))

    def extract_outcome(self, event: WebhookEvent) -> WebhookOutcome | None:
        return None


def declined(message: str = "Card declined") -> PaymentResult:
    return PaymentResult(status=PaymentStatus.FAILED, error_message=message, raw_response={"message": message})


# ==================== NOTIFICATIONS ====================


class RecordingNotificationService(NotificationService):
    """Notification sink that keeps every published event."""

    def __init__(self, config: Settings) -> None:
        super().__init__(config)
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)
        await super().publish(event)

    @property
    def names(self) -> list[str]:
        return [event.name for event in self.events]


# ==================== FIXTURES ====================


@pytest.fixture
def settings() -> Settings:
    """Settings with every gateway enabled and no outbound notification hook."""
    return Settings(
        _env_file=None,
        enable_stripe_gateway=True,
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        enable_payfast_gateway=True,
        payfast_merchant_id="10000100",
        payfast_merchant_key="46f0cd694581a",
        payfast_passphrase=PAYFAST_PASSPHRASE,
        enable_stcpay_gateway=True,
        stcpay_api_url="https://stcpay.test/v1",
        stcpay_merchant_id="merchant_test",
        stcpay_api_key="stc_key_test",
        stcpay_webhook_secret=STCPAY_WEBHOOK_SECRET,
        enable_recurring_billing=True,
        enable_automated_dunning=True,
        default_dunning_attempts=3,
        default_dunning_retry_intervals_days=[3, 5, 7],
        notification_webhook_url=None,
    )


@pytest.fixture
def stcpay_gateway() -> FakeGateway:
    """Token-billed gateway: renewals are charged by the service."""
    return FakeGateway(GatewayType.STCPAY)


@pytest.fixture
def stripe_gateway() -> FakeGateway:
    """Gateway that bills renewals itself."""
    return FakeGateway(GatewayType.STRIPE, auto_renews=True)


@pytest.fixture
def gateway_service(settings, stcpay_gateway, stripe_gateway) -> GatewayService:
    return GatewayService(
        config=settings,
        builders={
            GatewayType.STCPAY: lambda config: stcpay_gateway,
            GatewayType.STRIPE: lambda config: stripe_gateway,
        },
    )


@pytest.fixture
def plans() -> list[SubscriptionPlan]:
    return [
        SubscriptionPlan(
            id="basic",
            name="Basic",
            plan_type="standard",
            pricing=[
                PricingTier(amount=Decimal("30.00"), currency="SAR", cycle=BillingCycle.MONTHLY),
                PricingTier(amount=Decimal("80.00"), currency="SAR", cycle=BillingCycle.QUARTERLY),
            ],
            features=["invoices"],
        ),
        SubscriptionPlan(
            id="pro",
            name="Pro",
            plan_type="standard",
            pricing=[
                PricingTier(amount=Decimal("60.00"), currency="SAR", cycle=BillingCycle.MONTHLY),
                PricingTier(amount=Decimal("160.00"), currency="SAR", cycle=BillingCycle.QUARTERLY),
            ],
            features=["invoices", "analytics"],
            support_tier="priority",
        ),
        SubscriptionPlan(
            id="annual_only",
            name="Annual",
            plan_type="enterprise",
            pricing=[PricingTier(amount=Decimal("900.00"), currency="SAR", cycle=BillingCycle.ANNUAL)],
        ),
    ]


@pytest.fixture
def log_repository() -> InMemoryTransactionLogRepository:
    return InMemoryTransactionLogRepository()


@pytest.fixture
def subscription_repository() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def plan_repository(plans) -> InMemoryPlanRepository:
    return InMemoryPlanRepository(plans)


@pytest.fixture
def ledger(log_repository) -> LedgerService:
    return LedgerService(log_repository)


@pytest.fixture
def payments(ledger, gateway_service) -> PaymentService:
    return PaymentService(ledger, gateway_service)


@pytest.fixture
def notifications(settings) -> RecordingNotificationService:
    return RecordingNotificationService(settings)


@pytest.fixture
def subscription_service(
    subscription_repository, plan_repository, payments, notifications, settings
) -> SubscriptionService:
    return SubscriptionService(
        subscription_repository,
        plan_repository,
        payments,
        notifications=notifications,
        config=settings,
        locks=KeyedLock(),
    )


@pytest.fixture
def dunning_service(ledger, subscription_service, settings) -> DunningService:
    return DunningService(ledger, subscription_service, config=settings)


@pytest.fixture
def recurring_service(ledger, gateway_service, dunning_service, settings) -> RecurringBillingService:
    return RecurringBillingService(ledger, gateway_service, dunning=dunning_service, config=settings)


@pytest.fixture
def billing_details() -> BillingDetails:
    return BillingDetails(payment_method_token="tok_wallet_966500000001", contact_email="billing@merchant.test")
