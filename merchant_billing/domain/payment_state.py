"""Payment status vocabulary and ledger update rules."""

from enum import Enum


class PaymentStatus(str, Enum):
    """Provider-neutral payment outcome."""

    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransactionType(str, Enum):
    """Kind of payment attempt recorded in the ledger."""

    SALE = "sale"
    REFUND = "refund"
    RECURRING_INITIAL = "recurring_initial"
    RECURRING_RENEWAL = "recurring_renewal"
    RECURRING_RETRY = "recurring_retry"
    CHARGE = "charge"


# Attempts the dunning engine counts
RECURRING_ATTEMPT_TYPES = frozenset(
    {TransactionType.RECURRING_RENEWAL, TransactionType.RECURRING_RETRY}
)

# Re-applying these statuses to a log that already holds them is a no-op
IDEMPOTENT_TERMINAL_STATUSES = frozenset(
    {PaymentStatus.SUCCESSFUL, PaymentStatus.REFUNDED}
)


def is_redundant_update(current: str | PaymentStatus, target: str | PaymentStatus) -> bool:
    """Return True if moving ``current`` to ``target`` must be skipped.

    Every other transition is accepted as given: providers are the source
    of truth for terminal payment state.
    """
    current = PaymentStatus(current)
    target = PaymentStatus(target)
    return current == target and current in IDEMPOTENT_TERMINAL_STATUSES
