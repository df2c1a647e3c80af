"""Status enums and the subscription status transition table.

The orchestrator only ever performs two transitions on a subscription:
``active -> active`` when a renewal is charged and ``active -> payment_failed``
when it is not. ``payment_failed`` has exactly one way out, a manual
reactivation by an operator; the billing run itself never leaves it.
"""

import enum

from app.billing.errors import IllegalStatusTransition


class SubscriptionStatus(str, enum.Enum):
    """Lifecycle state of a recurring cleaning contract."""

    QUEUED = "queued"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    PAYMENT_FAILED = "payment_failed"


class PaymentStatus(str, enum.Enum):
    """State of a single charge against a subscription."""

    PROCESSING = "processing"  # direct debit accepted, settles in 1-3 days
    SETTLED = "settled"
    FAILED = "failed"


class InvoiceStatus(str, enum.Enum):
    """Invoice state, mirroring the payment status at creation time."""

    PAID = "paid"
    PENDING = "pending"


ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.QUEUED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.STOPPED}),
    SubscriptionStatus.ACTIVE: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.STOPPED,
            SubscriptionStatus.PAYMENT_FAILED,
        }
    ),
    SubscriptionStatus.PAUSED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.STOPPED}),
    SubscriptionStatus.STOPPED: frozenset(),
    # Terminal for automatic billing; reactivation is an operator action.
    SubscriptionStatus.PAYMENT_FAILED: frozenset({SubscriptionStatus.ACTIVE}),
}

# Payment gateway statuses accepted as a successful renewal.
GATEWAY_STATUS_MAP: dict[str, PaymentStatus] = {
    "succeeded": PaymentStatus.SETTLED,
    "processing": PaymentStatus.PROCESSING,
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    """Return True if ``current -> target`` is in the transition table."""
    return target in ALLOWED_TRANSITIONS.get(SubscriptionStatus(current), frozenset())


def transition(current: SubscriptionStatus, target: SubscriptionStatus) -> SubscriptionStatus:
    """Validate a status change and return the new status.

    Raises:
        IllegalStatusTransition: if the change is not in ``ALLOWED_TRANSITIONS``.
    """
    current = SubscriptionStatus(current)
    target = SubscriptionStatus(target)
    if not can_transition(current, target):
        raise IllegalStatusTransition(current.value, target.value)
    return target


def invoice_status_for(payment_status: PaymentStatus) -> InvoiceStatus:
    """Invoices for settled payments are paid; provisional ones stay pending."""
    if payment_status == PaymentStatus.SETTLED:
        return InvoiceStatus.PAID
    return InvoiceStatus.PENDING
