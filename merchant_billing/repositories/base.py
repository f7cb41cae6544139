"""Persistence contracts for the ledger, subscriptions and plans."""

from abc import ABC, abstractmethod
from datetime import datetime
from uuid import UUID

from merchant_billing.domain.plan import SubscriptionPlan
from merchant_billing.domain.subscription import MerchantSubscription
from merchant_billing.models.transaction_log import TransactionLog


class TransactionLogRepository(ABC):
    """Ledger storage. Rows are appended and updated, never deleted."""

    @abstractmethod
    async def add(self, entry: TransactionLog) -> TransactionLog:
        """Insert ``entry``.

        If ``(provider, provider_transaction_id)`` already exists the existing
        row is returned unchanged.
        """

    @abstractmethod
    async def save(self, entry: TransactionLog) -> TransactionLog:
        """Persist changes to an existing row.

        Same duplicate rule as ``add`` when the provider id collides.
        """

    @abstractmethod
    async def get(self, log_id: UUID) -> TransactionLog | None:
        ...

    @abstractmethod
    async def find_by_provider_transaction_id(
        self, provider: str, provider_transaction_id: str
    ) -> TransactionLog | None:
        ...

    @abstractmethod
    async def find_latest_failed_by_subscription(self, provider_subscription_id: str) -> TransactionLog | None:
        ...

    @abstractmethod
    async def find_all_by_subscription(self, provider_subscription_id: str) -> list[TransactionLog]:
        """All rows for the subscription, oldest first."""


class SubscriptionRepository(ABC):
    """Subscription aggregate storage with optimistic versioning."""

    @abstractmethod
    async def add(self, subscription: MerchantSubscription) -> MerchantSubscription:
        ...

    @abstractmethod
    async def save(self, subscription: MerchantSubscription) -> MerchantSubscription:
        """Compare-and-swap on ``version``; bumps it on success.

        Raises:
            ConcurrencyConflictError: If the stored version moved on
        """

    @abstractmethod
    async def get(self, subscription_id: str) -> MerchantSubscription | None:
        ...

    @abstractmethod
    async def get_by_provider_subscription_id(
        self, provider: str, provider_subscription_id: str
    ) -> MerchantSubscription | None:
        ...

    @abstractmethod
    async def find_live_by_merchant(self, merchant_id: str) -> MerchantSubscription | None:
        """The merchant's non-terminated, non-cancelled subscription, if any."""

    @abstractmethod
    async def find_live_by_plan(self, plan_id: str, limit: int = 500) -> list[MerchantSubscription]:
        """Non-terminal subscriptions on the plan."""

    @abstractmethod
    async def find_due_for_renewal(self, before: datetime, limit: int = 500) -> list[MerchantSubscription]:
        """Active or past-due subscriptions whose period ended at or before ``before``."""

    @abstractmethod
    async def find_in_dunning(self, limit: int = 500) -> list[MerchantSubscription]:
        """Past-due subscriptions eligible for a retry decision."""

    @abstractmethod
    async def find_suspended_before(self, before: datetime, limit: int = 500) -> list[MerchantSubscription]:
        ...


class PlanRepository(ABC):
    """Read-only plan catalog."""

    @abstractmethod
    async def get(self, plan_id: str) -> SubscriptionPlan | None:
        ...
