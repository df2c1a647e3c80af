"""Shared API dependencies — single import point for all routers.

Routers get the database session, settings, the billing runner and the cron
guard from here::

    from app.api.deps import get_db, get_billing_runner, verify_cron_secret

Tests replace ``get_settings`` and ``get_billing_runner`` through
``app.dependency_overrides``.
"""

import logging

from fastapi import Depends, Header, HTTPException, status

from app.billing.stripe_client import StripeGateway
from app.config import Settings, settings
from app.database import async_session_factory, get_db
from app.services.notification_service import LogNotifier
from app.services.recurring_billing import BillingConfig, RecurringBillingRunner

logger = logging.getLogger(__name__)


def get_settings() -> Settings:
    return settings


def get_billing_runner(app_settings: Settings = Depends(get_settings)) -> RecurringBillingRunner:
    """Build a runner wired to Stripe, the application database and the log notifier."""
    return RecurringBillingRunner(
        session_factory=async_session_factory,
        gateway=StripeGateway(app_settings.stripe_secret_key, currency=app_settings.billing_currency),
        notifier=LogNotifier(),
        config=BillingConfig.from_settings(app_settings),
    )


async def verify_cron_secret(
    authorization: str | None = Header(default=None),
    app_settings: Settings = Depends(get_settings),
) -> None:
    """Require ``Authorization: Bearer <CRON_SECRET>`` when a secret is configured."""
    if not app_settings.cron_secret:
        return
    if authorization != f"Bearer {app_settings.cron_secret}":
        logger.warning("Unauthorized request to a scheduler endpoint")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


__all__ = [
    "get_db",
    "get_settings",
    "get_billing_runner",
    "verify_cron_secret",
]
