"""Subscription plan catalog types (read-only for billing)."""

import calendar
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from merchant_billing.core.exceptions import ValidationError


class BillingCycle(str, Enum):
    """Supported billing cycles."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"

    @property
    def months(self) -> int:
        return {"monthly": 1, "quarterly": 3, "annual": 12}[self.value]

    def next_period_end(self, start: datetime) -> datetime:
        """Return ``start`` advanced by one cycle, clamped to month end."""
        month_index = start.month - 1 + self.months
        year = start.year + month_index // 12
        month = month_index % 12 + 1
        day = min(start.day, calendar.monthrange(year, month)[1])
        return start.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class PricingTier:
    """Price of a plan for one billing cycle."""

    amount: Decimal
    currency: str
    cycle: BillingCycle

    @classmethod
    def from_dict(cls, data: dict) -> "PricingTier":
        return cls(amount=Decimal(str(data["amount"])), currency=data["currency"], cycle=BillingCycle(data["cycle"]))


@dataclass
class SubscriptionPlan:
    """Pricing and entitlement template."""

    id: str
    name: str
    plan_type: str
    pricing: list[PricingTier]
    features: list[str] = field(default_factory=list)
    usage_limits: dict[str, int] = field(default_factory=dict)
    support_tier: str = "standard"

    def __post_init__(self) -> None:
        if not self.pricing:
            raise ValidationError(f"Plan '{self.id}' must define at least one pricing tier")

    def price_for(self, cycle: str | BillingCycle) -> PricingTier | None:
        cycle = BillingCycle(cycle)
        for tier in self.pricing:
            if tier.cycle == cycle:
                return tier
        return None
