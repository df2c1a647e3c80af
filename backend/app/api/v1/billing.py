"""Billing API endpoints — scheduled and manual recurring billing triggers."""

import logging
import uuid

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_billing_runner, get_db, get_settings, verify_cron_secret
from app.billing.correlation import new_correlation_id
from app.billing.errors import SubscriptionNotFound, ValidationFailure
from app.billing.status import SubscriptionStatus
from app.config import Settings
from app.schemas.billing import (
    BillingRunResponse,
    ReactivateRequest,
    SubscriptionStatusResponse,
)
from app.services.recurring_billing import BillingRunResult, RecurringBillingRunner
from app.services.subscription_service import get_subscription, reactivate_subscription

logger = logging.getLogger(__name__)

cron_router = APIRouter(prefix="/api/v1/cron", tags=["cron"])
router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


def _run_response(run: BillingRunResult, mode: str) -> JSONResponse:
    """200 for any completed run, 500 only when the run itself failed."""
    body = BillingRunResponse.from_run(run, mode=mode)
    return JSONResponse(
        status_code=status.HTTP_200_OK if run.success else status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body.model_dump(mode="json", by_alias=True),
    )


@cron_router.get(
    "/recurring-billing",
    response_model=BillingRunResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def run_scheduled_billing(
    x_correlation_id: str | None = Header(default=None),
    runner: RecurringBillingRunner = Depends(get_billing_runner),
) -> JSONResponse:
    """Daily scheduler entry point: renew every subscription due today."""
    correlation_id = x_correlation_id or new_correlation_id("cron")
    logger.info("Recurring billing cron triggered [%s]", correlation_id)
    run = await runner.run(correlation_id=correlation_id)
    return _run_response(run, mode="scheduled")


@router.get("/recurring/trigger", response_model=BillingRunResponse)
async def trigger_recurring_billing(
    subscription_id: uuid.UUID | None = Query(default=None),
    x_correlation_id: str | None = Header(default=None),
    runner: RecurringBillingRunner = Depends(get_billing_runner),
    app_settings: Settings = Depends(get_settings),
) -> JSONResponse:
    """Manual trigger for testing, only available with a Stripe test key.

    Without ``subscription_id`` the full daily run is executed; with it, only
    that subscription is billed, whether or not it is due.
    """
    if not app_settings.stripe_test_mode:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Manual recurring billing is only available in Stripe test mode.",
        )

    correlation_id = x_correlation_id or new_correlation_id("manual")
    if subscription_id is None:
        run = await runner.run(correlation_id=correlation_id)
        return _run_response(run, mode="manual")

    try:
        run = await runner.run_single(subscription_id, correlation_id=correlation_id)
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ValidationFailure as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return _run_response(run, mode="manual")


@router.post(
    "/subscriptions/{subscription_id}/reactivate",
    response_model=SubscriptionStatusResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def reactivate(
    subscription_id: uuid.UUID,
    body: ReactivateRequest | None = None,
    db: AsyncSession = Depends(get_db),
) -> SubscriptionStatusResponse:
    """Move a ``payment_failed`` subscription back to active (operator action)."""
    try:
        subscription = await get_subscription(db, subscription_id)
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    if subscription.status != SubscriptionStatus.PAYMENT_FAILED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Subscription status is '{subscription.status.value}', expected 'payment_failed'",
        )

    await reactivate_subscription(
        db, subscription, next_renewal_date=body.next_renewal_date if body else None
    )
    return SubscriptionStatusResponse(
        id=subscription.id,
        status=subscription.status.value,
        next_renewal_date=subscription.next_renewal_date,
        failure_reason=subscription.failure_reason,
    )
