"""Pydantic v2 request/response schemas for billing endpoints.

Responses use camelCase keys (``successCount``, ``subscriptionId``) for the
scheduler and admin dashboard.
"""

import uuid
from datetime import date, datetime, timezone

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.services.recurring_billing import BillingRunResult, SubscriptionResult


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Request schemas ---


class ReactivateRequest(_CamelModel):
    """Operator request to move a failed subscription back to active."""

    next_renewal_date: date | None = None


# --- Response schemas ---


class SubscriptionResultResponse(_CamelModel):
    """Outcome for one subscription in a billing run."""

    subscription_id: str
    success: bool
    payment_id: str | None = None
    payment_status: str | None = None
    amount_cents: int | None = None
    invoice_number: str | None = None
    next_renewal_date: date | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def from_result(cls, result: SubscriptionResult) -> "SubscriptionResultResponse":
        return cls(
            subscription_id=result.subscription_id,
            success=result.success,
            payment_id=result.payment_id,
            payment_status=result.payment_status,
            amount_cents=result.amount_cents,
            invoice_number=result.invoice_number,
            next_renewal_date=result.next_renewal_date,
            error=result.error,
            error_code=result.error_code,
        )


class BillingRunResponse(_CamelModel):
    """Summary returned to the scheduler or operator that triggered a run."""

    success: bool
    timestamp: datetime
    correlation_id: str
    mode: str  # "scheduled" or "manual"
    processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    results: list[SubscriptionResultResponse] = []
    error: str | None = None

    @classmethod
    def from_run(cls, run: BillingRunResult, mode: str) -> "BillingRunResponse":
        return cls(
            success=run.success,
            timestamp=datetime.now(timezone.utc),
            correlation_id=run.correlation_id,
            mode=mode,
            processed=run.processed,
            success_count=run.success_count,
            failure_count=run.failure_count,
            results=[SubscriptionResultResponse.from_result(r) for r in run.results],
            error=run.error,
        )


class SubscriptionStatusResponse(_CamelModel):
    """Billing state of a single subscription."""

    id: uuid.UUID
    status: str
    next_renewal_date: date | None
    failure_reason: str | None
