"""Proration of mid-cycle plan changes.

Policies:
- prorated: charge or credit the price difference for the unused fraction
- no_credit: upgrades charge the difference, downgrades yield nothing
- full_credit: same formula as prorated
"""

import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum

from merchant_billing.domain.plan import SubscriptionPlan
from merchant_billing.domain.subscription import MerchantSubscription
from merchant_billing.utils.money import quantize_amount

logger = logging.getLogger(__name__)


class ProrationPolicy(str, Enum):
    """Plan change proration policies."""

    PRORATED = "prorated"
    NO_CREDIT = "no_credit"
    FULL_CREDIT = "full_credit"


ZERO = Decimal("0")


def remaining_fraction(period_start: datetime, period_end: datetime, change_date: datetime) -> Decimal:
    """Unused share of ``[period_start, period_end)`` at ``change_date``."""
    total = (period_end - period_start).total_seconds()
    if total <= 0:
        return ZERO
    remaining = (period_end - change_date).total_seconds()
    return Decimal(str(remaining)) / Decimal(str(total))


def calculate_proration(
    subscription: MerchantSubscription,
    old_plan: SubscriptionPlan,
    new_plan: SubscriptionPlan,
    change_date: datetime,
    policy: str | ProrationPolicy = ProrationPolicy.PRORATED,
) -> Decimal:
    """Calculate the signed one-time amount for a plan change.

    Args:
        subscription: Subscription being changed (its cycle prices both plans)
        old_plan: Plan the subscription is on now
        new_plan: Plan being moved to
        change_date: When the change takes effect
        policy: Proration policy

    Returns:
        Decimal: Positive for an additional charge, negative for a credit,
        rounded to the currency's minor unit
    """
    policy = ProrationPolicy(policy)
    start = subscription.current_period_start
    end = subscription.current_period_end

    if change_date < start or change_date >= end:
        return ZERO

    old_tier = old_plan.price_for(subscription.billing_cycle)
    new_tier = new_plan.price_for(subscription.billing_cycle)
    if old_tier is None or new_tier is None:
        logger.warning(
            f"Proration skipped for subscription {subscription.id}: no "
            f"{subscription.billing_cycle.value} price on plan "
            f"{old_plan.id if old_tier is None else new_plan.id}"
        )
        return ZERO
    if old_tier.currency.upper() != new_tier.currency.upper():
        logger.warning(
            f"Proration skipped for subscription {subscription.id}: currency mismatch "
            f"{old_tier.currency} vs {new_tier.currency}"
        )
        return ZERO

    difference = new_tier.amount - old_tier.amount
    if difference == 0:
        return ZERO
    if policy == ProrationPolicy.NO_CREDIT and difference < 0:
        return ZERO

    fraction = remaining_fraction(start, end, change_date)
    return quantize_amount(fraction * difference, new_tier.currency)
