"""Recurring billing error taxonomy.

Every failure that can happen while renewing a subscription maps to one of
these classes. ``code`` is the stable identifier reported in run results.
"""


class RecurringBillingError(Exception):
    """Base class for all recurring billing failures."""

    code = "billing_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SelectionFailure(RecurringBillingError):
    """The subscription store could not be queried; the run is aborted."""

    code = "selection_failure"


class ValidationFailure(RecurringBillingError):
    """The subscription cannot be charged; the gateway was not contacted."""

    code = "validation_failure"


class BelowMinimumAmount(ValidationFailure):
    """Cycle amount is below the gateway's minimum chargeable amount."""

    code = "below_minimum_amount"

    def __init__(self, amount: int, minimum: int) -> None:
        super().__init__(
            f"Amount ({amount} cents) is below the gateway minimum ({minimum} cents)"
        )
        self.amount = amount
        self.minimum = minimum


class GatewayChargeFailure(RecurringBillingError):
    """The gateway rejected the charge or returned an unexpected status."""

    code = "gateway_charge_failure"

    def __init__(
        self,
        message: str,
        status: str | None = None,
        payment_intent_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.payment_intent_id = payment_intent_id


class IdempotencyConflict(GatewayChargeFailure):
    """Stripe refused a reused idempotency key because the parameters changed.

    The first request under that key may already have charged the customer.
    """

    code = "idempotency_conflict"


class LedgerWriteFailure(RecurringBillingError):
    """The charge went through but the payment record could not be stored."""

    code = "ledger_write_failure"

    def __init__(self, message: str, payment_intent_id: str) -> None:
        super().__init__(message)
        self.payment_intent_id = payment_intent_id


class InvoiceGenerationFailure(RecurringBillingError):
    """Invoice could not be generated. Never fatal to a renewal."""

    code = "invoice_generation_failure"


class CycleAdvanceFailure(RecurringBillingError):
    """The next renewal date could not be persisted after a charge."""

    code = "cycle_advance_failure"


class SubscriptionNotFound(RecurringBillingError):
    """A manually targeted subscription does not exist."""

    code = "subscription_not_found"


class IllegalStatusTransition(RecurringBillingError):
    """A status change is not allowed by the transition table."""

    code = "illegal_status_transition"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal subscription status transition: {current} -> {target}")
        self.current = current
        self.target = target
