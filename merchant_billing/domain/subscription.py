"""Merchant subscription aggregate and its lifecycle state machine.

States:
    pending -> active -> past_due -> suspended -> terminated
    active, past_due, suspended -> active (payment recovered)
    any non-terminal -> cancelled | terminated

Cancelled and terminated are terminal. Every transition appends a
``SubscriptionEvent``; callers drain them with ``pull_events`` after the
aggregate has been persisted.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from merchant_billing.core.exceptions import InvalidSubscriptionStateError, ValidationError
from merchant_billing.domain import events
from merchant_billing.domain.events import SubscriptionEvent
from merchant_billing.domain.plan import BillingCycle


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    TERMINATED = "terminated"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.TERMINATED})
RENEWABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE})


@dataclass(frozen=True)
class BillingDetails:
    """Opaque payment-method reference plus contact data. Never raw card data."""

    payment_method_token: str
    contact_email: str
    address: dict[str, str] | None = None

    def __post_init__(self) -> None:
        if not self.payment_method_token:
            raise ValidationError("Billing details require a payment method token")
        if not self.contact_email:
            raise ValidationError("Billing details require a contact email")


@dataclass(frozen=True)
class PaymentRecord:
    """One entry of a subscription's payment history."""

    occurred_at: datetime
    success: bool
    amount: Decimal | None = None
    currency: str | None = None
    provider_transaction_id: str | None = None
    reason: str | None = None


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(UTC)


@dataclass
class MerchantSubscription:
    """A merchant's recurring billing relationship to a plan."""

    merchant_id: str
    plan_id: str
    billing_cycle: BillingCycle
    billing_details: BillingDetails
    start_date: datetime
    current_period_start: datetime
    current_period_end: datetime
    id: str = field(default_factory=lambda: str(uuid4()))
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    end_date: datetime | None = None
    provider: str | None = None
    provider_subscription_id: str | None = None
    payment_history: list[PaymentRecord] = field(default_factory=list)
    dunning_attempts: int = 0
    last_payment_attempt_at: datetime | None = None
    suspended_at: datetime | None = None
    version: int = 0
    _pending_events: list[SubscriptionEvent] = field(default_factory=list, repr=False, compare=False)

    # ==================== CREATION ====================

    @classmethod
    def subscribe(
        cls,
        merchant_id: str,
        plan_id: str,
        billing_cycle: str | BillingCycle,
        billing_details: BillingDetails,
        provider: str | None = None,
        now: datetime | None = None,
    ) -> "MerchantSubscription":
        """Create a pending subscription whose first period starts now."""
        start = _now(now)
        cycle = BillingCycle(billing_cycle)
        subscription = cls(
            merchant_id=merchant_id,
            plan_id=plan_id,
            billing_cycle=cycle,
            billing_details=billing_details,
            start_date=start,
            current_period_start=start,
            current_period_end=cycle.next_period_end(start),
            provider=provider,
        )
        subscription._emit(events.SUBSCRIPTION_CREATED, None, reason="subscribed", occurred_at=start)
        return subscription

    # ==================== QUERIES ====================

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_due_for_renewal(self, now: datetime | None = None) -> bool:
        return self.status in RENEWABLE_STATUSES and self.current_period_end <= _now(now)

    def has_payment_record(self, provider_transaction_id: str | None, success: bool) -> bool:
        """True when this provider charge outcome is already in the payment history."""
        if not provider_transaction_id:
            return False
        return any(
            record.provider_transaction_id == provider_transaction_id and record.success == success
            for record in self.payment_history
        )

    def pull_events(self) -> list[SubscriptionEvent]:
        """Drain the events accumulated since the last call."""
        pending, self._pending_events = self._pending_events, []
        return pending

    # ==================== TRANSITIONS ====================

    def link_provider(
        self,
        provider: str,
        provider_subscription_id: str,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> None:
        """Attach the provider-side mandate, adopting its period when it reports one."""
        self._assert_not_terminal("link a provider mandate")
        self.provider = provider
        self.provider_subscription_id = provider_subscription_id
        if period_start and period_end and period_end > period_start:
            self.current_period_start = period_start
            self.current_period_end = period_end

    def record_payment_success(
        self,
        amount: Decimal,
        currency: str,
        provider_transaction_id: str | None,
        now: datetime | None = None,
    ) -> None:
        self._assert_not_terminal("record a payment")
        at = _now(now)
        old = self.status
        self.status = SubscriptionStatus.ACTIVE
        self.dunning_attempts = 0
        self.last_payment_attempt_at = None
        self.suspended_at = None
        self.payment_history.append(
            PaymentRecord(
                occurred_at=at,
                success=True,
                amount=amount,
                currency=currency,
                provider_transaction_id=provider_transaction_id,
            )
        )
        name = events.SUBSCRIPTION_PAYMENT_SUCCEEDED if old == SubscriptionStatus.ACTIVE else events.SUBSCRIPTION_ACTIVATED
        self._emit(
            name,
            old,
            reason="payment succeeded",
            data={"amount": str(amount), "currency": currency, "provider_transaction_id": provider_transaction_id},
            occurred_at=at,
        )

    def record_payment_failure(
        self,
        reason: str | None,
        now: datetime | None = None,
        provider_transaction_id: str | None = None,
    ) -> None:
        self._assert_not_terminal("record a payment failure")
        at = _now(now)
        old = self.status
        self.dunning_attempts += 1
        self.last_payment_attempt_at = at
        self.payment_history.append(
            PaymentRecord(
                occurred_at=at, success=False, provider_transaction_id=provider_transaction_id, reason=reason
            )
        )
        # Escalation beyond past_due belongs to dunning
        if old == SubscriptionStatus.ACTIVE:
            self.status = SubscriptionStatus.PAST_DUE
        self._emit(
            events.SUBSCRIPTION_PAYMENT_FAILED,
            old,
            reason=reason,
            data={"dunning_attempts": self.dunning_attempts},
            occurred_at=at,
        )

    def sync_dunning_attempts(self, consecutive_failures: int) -> None:
        """Refresh the cached attempt counter from the ledger's count."""
        self.dunning_attempts = consecutive_failures

    def renew(self, period_start: datetime, period_end: datetime, now: datetime | None = None) -> None:
        if self.status not in RENEWABLE_STATUSES:
            raise InvalidSubscriptionStateError(
                f"Cannot renew subscription {self.id} in status {self.status.value}"
            )
        if period_end <= period_start:
            raise ValidationError("Renewal period end must be after its start")
        old = self.status
        self.current_period_start = period_start
        self.current_period_end = period_end
        self.status = SubscriptionStatus.ACTIVE
        self.dunning_attempts = 0
        self.last_payment_attempt_at = None
        self.suspended_at = None
        self._emit(
            events.SUBSCRIPTION_RENEWED,
            old,
            reason="period renewed",
            data={"period_start": period_start.isoformat(), "period_end": period_end.isoformat()},
            occurred_at=_now(now),
        )

    def change_plan(
        self,
        new_plan_id: str,
        proration_amount: Decimal,
        new_cycle: str | BillingCycle | None = None,
        now: datetime | None = None,
    ) -> None:
        self._assert_not_terminal("change plan")
        old = self.status
        old_plan_id = self.plan_id
        self.plan_id = new_plan_id
        if new_cycle is not None:
            self.billing_cycle = BillingCycle(new_cycle)
        # A plan change implies billing has been resolved
        if old != SubscriptionStatus.ACTIVE:
            self.status = SubscriptionStatus.ACTIVE
            self.suspended_at = None
        self._emit(
            events.SUBSCRIPTION_PLAN_CHANGED,
            old,
            reason=f"plan changed from {old_plan_id} to {new_plan_id}",
            data={
                "old_plan_id": old_plan_id,
                "new_plan_id": new_plan_id,
                "billing_cycle": self.billing_cycle.value,
                "proration_amount": str(proration_amount),
            },
            occurred_at=_now(now),
        )

    def cancel(self, reason: str | None = None, now: datetime | None = None) -> None:
        if self.status == SubscriptionStatus.CANCELLED:
            return
        if self.status == SubscriptionStatus.TERMINATED:
            raise InvalidSubscriptionStateError(f"Subscription {self.id} is already terminated")
        at = _now(now)
        old = self.status
        self.status = SubscriptionStatus.CANCELLED
        # Access continues until the paid period ends
        self.end_date = max(at, self.current_period_end)
        self._emit(events.SUBSCRIPTION_CANCELLED, old, reason=reason or "cancelled", occurred_at=at)

    def suspend(self, reason: str | None = None, now: datetime | None = None) -> None:
        if self.status in (SubscriptionStatus.SUSPENDED, *TERMINAL_STATUSES):
            return
        if self.status != SubscriptionStatus.PAST_DUE:
            raise InvalidSubscriptionStateError(
                f"Only past-due subscriptions can be suspended, {self.id} is {self.status.value}"
            )
        old = self.status
        self.status = SubscriptionStatus.SUSPENDED
        self.suspended_at = _now(now)
        self._emit(events.SUBSCRIPTION_SUSPENDED, old, reason=reason or "suspended", occurred_at=_now(now))

    def terminate(self, reason: str | None = None, now: datetime | None = None) -> None:
        if self.is_terminal:
            return
        at = _now(now)
        old = self.status
        self.status = SubscriptionStatus.TERMINATED
        self.end_date = at
        self._emit(events.SUBSCRIPTION_TERMINATED, old, reason=reason or "terminated", occurred_at=at)

    # ==================== INTERNALS ====================

    def _assert_not_terminal(self, action: str) -> None:
        if self.is_terminal:
            raise InvalidSubscriptionStateError(
                f"Cannot {action} on subscription {self.id} in status {self.status.value}"
            )

    def _emit(
        self,
        name: str,
        old_status: SubscriptionStatus | None,
        reason: str | None = None,
        data: dict | None = None,
        occurred_at: datetime | None = None,
    ) -> None:
        self._pending_events.append(
            SubscriptionEvent(
                name=name,
                subscription_id=self.id,
                merchant_id=self.merchant_id,
                old_status=old_status.value if old_status else None,
                new_status=self.status.value,
                reason=reason,
                data=data or {},
                occurred_at=_now(occurred_at),
            )
        )
