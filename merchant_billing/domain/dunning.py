"""Dunning policy: when to retry a failed recurring charge and when to give up."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

from merchant_billing.core.exceptions import ValidationError
from merchant_billing.domain.payment_state import RECURRING_ATTEMPT_TYPES, PaymentStatus, TransactionType


class FinalAction(str, Enum):
    """What happens once retries are exhausted."""

    CANCEL_SUBSCRIPTION = "cancel_subscription"
    MARK_UNPAID = "mark_unpaid"


class DunningDecision(str, Enum):
    RETRY = "retry"
    DEFER = "defer"
    FINAL_ACTION = "final_action"


@dataclass(frozen=True)
class DunningParameters:
    """Retry campaign policy, supplied per invocation."""

    max_retries: int = 3
    retry_intervals_days: list[int] = field(default_factory=lambda: [3, 5, 7])
    notify_customer: bool = True
    final_action: FinalAction = FinalAction.CANCEL_SUBSCRIPTION

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValidationError("max_retries must not be negative")
        if any(days < 0 for days in self.retry_intervals_days):
            raise ValidationError("Retry intervals must not be negative")
        object.__setattr__(self, "final_action", FinalAction(self.final_action))

    @classmethod
    def from_settings(cls, settings) -> "DunningParameters":
        return cls(
            max_retries=settings.default_dunning_attempts,
            retry_intervals_days=list(settings.default_dunning_retry_intervals_days),
            notify_customer=settings.default_dunning_notify_customer,
            final_action=FinalAction(settings.default_dunning_final_action),
        )

    def interval_for(self, attempt_index: int) -> int | None:
        if 0 <= attempt_index < len(self.retry_intervals_days):
            return self.retry_intervals_days[attempt_index]
        return None


class LedgerAttempt(Protocol):
    status: str
    transaction_type: str
    created_at: datetime


def count_consecutive_failures(attempts: Iterable[LedgerAttempt]) -> int:
    """Count failed renewal/retry attempts since the most recent success.

    ``attempts`` must be in ascending ``created_at`` order. Non-recurring
    entries and still-pending attempts are ignored.
    """
    count = 0
    for attempt in attempts:
        if TransactionType(attempt.transaction_type) not in RECURRING_ATTEMPT_TYPES:
            continue
        status = PaymentStatus(attempt.status)
        if status == PaymentStatus.SUCCESSFUL:
            count = 0
        elif status == PaymentStatus.FAILED:
            count += 1
    return count


def decide(
    consecutive_failures: int,
    params: DunningParameters,
    last_attempt_at: datetime | None,
    now: datetime,
) -> DunningDecision:
    """Decide the next dunning step for a subscription in arrears."""
    if consecutive_failures >= params.max_retries:
        return DunningDecision.FINAL_ACTION
    interval = params.interval_for(consecutive_failures)
    if interval is None:
        return DunningDecision.FINAL_ACTION
    if last_attempt_at is not None and now - last_attempt_at < timedelta(days=interval):
        return DunningDecision.DEFER
    return DunningDecision.RETRY
