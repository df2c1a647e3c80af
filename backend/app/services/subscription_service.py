"""Subscription service — renewal selection and billing state updates."""

import logging
import uuid
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import (
    CycleAdvanceFailure,
    SelectionFailure,
    SubscriptionNotFound,
)
from app.billing.status import SubscriptionStatus
from app.models.subscription import Subscription

logger = logging.getLogger(__name__)


async def select_due_subscriptions(db: AsyncSession, today: date) -> list[Subscription]:
    """Return every subscription due for renewal on ``today``.

    Eligible means active, with a completed mandate, and a renewal date that
    is today or in the past. The result is a materialized snapshot: writes
    made later in the run do not change it.

    Raises:
        SelectionFailure: if the store cannot be queried.
    """
    try:
        result = await db.execute(
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.mandate_completed.is_(True),
                Subscription.next_renewal_date <= today,
            )
            .order_by(Subscription.next_renewal_date, Subscription.id)
        )
        subscriptions = list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.exception("Selecting due subscriptions failed")
        raise SelectionFailure(f"Could not load subscriptions due for billing: {e}") from e

    logger.info("%d subscription(s) due for billing on %s", len(subscriptions), today)
    return subscriptions


async def get_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription:
    """Load one subscription with its customer.

    Raises:
        SubscriptionNotFound: if no subscription has this ID.
        SelectionFailure: if the store cannot be queried.
    """
    try:
        subscription = await db.get(Subscription, subscription_id)
    except SQLAlchemyError as e:
        raise SelectionFailure(f"Could not load subscription {subscription_id}: {e}") from e
    if subscription is None:
        raise SubscriptionNotFound(f"Subscription not found: {subscription_id}")
    return subscription


async def advance_renewal_date(
    db: AsyncSession,
    subscription: Subscription,
    today: date,
    cycle_length_days: int,
) -> date:
    """Move the renewal date one fixed cycle past ``today`` and persist it.

    The cycle length does not depend on the subscription's frequency label.

    Raises:
        CycleAdvanceFailure: if the update cannot be written.
    """
    next_date = today + timedelta(days=cycle_length_days)
    try:
        subscription.transition_to(SubscriptionStatus.ACTIVE)
        subscription.next_renewal_date = next_date
        await db.flush()
    except SQLAlchemyError as e:
        raise CycleAdvanceFailure(
            f"Next renewal date update failed for subscription {subscription.id}: {e}"
        ) from e

    logger.info("Subscription %s next renewal date set to %s", subscription.id, next_date)
    return next_date


async def mark_payment_failed(
    db: AsyncSession, subscription: Subscription, reason: str
) -> Subscription:
    """Move a subscription to ``payment_failed`` and record why.

    The billing run never selects ``payment_failed`` subscriptions again;
    see ``reactivate_subscription``.
    """
    subscription.transition_to(SubscriptionStatus.PAYMENT_FAILED)
    subscription.failure_reason = reason
    subscription.failed_at = datetime.now(timezone.utc).replace(tzinfo=None)
    await db.flush()

    logger.warning(
        "Subscription %s (customer %s) marked as payment_failed: %s",
        subscription.id,
        subscription.customer_id,
        reason,
    )
    return subscription


async def reactivate_subscription(
    db: AsyncSession,
    subscription: Subscription,
    next_renewal_date: date | None = None,
) -> Subscription:
    """Manual operator path out of ``payment_failed`` back to ``active``.

    Optionally reschedules the renewal; otherwise the stale past date is kept
    and the subscription is picked up by the next run.
    """
    subscription.transition_to(SubscriptionStatus.ACTIVE)
    subscription.failure_reason = None
    subscription.failed_at = None
    if next_renewal_date is not None:
        subscription.next_renewal_date = next_renewal_date
    await db.flush()

    logger.info(
        "Subscription %s reactivated, next renewal %s",
        subscription.id,
        subscription.next_renewal_date,
    )
    return subscription
