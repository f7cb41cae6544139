"""Subscription state-change events."""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_ACTIVATED = "subscription.activated"
SUBSCRIPTION_PAYMENT_SUCCEEDED = "subscription.payment_succeeded"
SUBSCRIPTION_PAYMENT_FAILED = "subscription.payment_failed"
SUBSCRIPTION_RENEWED = "subscription.renewed"
SUBSCRIPTION_PLAN_CHANGED = "subscription.plan_changed"
SUBSCRIPTION_PLAN_PRICE_CHANGED = "subscription.plan_price_changed"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"
SUBSCRIPTION_SUSPENDED = "subscription.suspended"
SUBSCRIPTION_TERMINATED = "subscription.terminated"


@dataclass(frozen=True)
class SubscriptionEvent:
    """A state change emitted by the subscription aggregate."""

    name: str
    subscription_id: str
    merchant_id: str
    old_status: str | None
    new_status: str
    reason: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        return payload
