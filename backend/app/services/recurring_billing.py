"""Recurring billing — renew every subscription that is due today.

Runs once a day from the scheduler, or manually for a single subscription.

Flow per subscription:
1. compute the cycle amount and check it can be charged
2. confirm an off-session PaymentIntent against the stored mandate
3. save the payment, then the invoice (invoice failure is tolerated)
4. move ``next_renewal_date`` one cycle forward
5. on any failure: mark the subscription ``payment_failed`` and alert an operator

Subscriptions are processed one at a time with a pause in between so the
Stripe rate limits are never hit. One subscription failing never stops the
others; only a failure to select subscriptions fails the run as a whole.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.billing.correlation import correlation_scope, new_correlation_id
from app.billing.errors import (
    CycleAdvanceFailure,
    GatewayChargeFailure,
    IllegalStatusTransition,
    InvoiceGenerationFailure,
    LedgerWriteFailure,
    RecurringBillingError,
    SelectionFailure,
    ValidationFailure,
)
from app.billing.pricing import CycleAmount, compute_cycle_amount, ensure_chargeable, format_cents
from app.billing.status import GATEWAY_STATUS_MAP, PaymentStatus, SubscriptionStatus
from app.models.subscription import Subscription
from app.services.ledger_service import InvoiceSettings, generate_invoice, record_payment_attempt
from app.services.notification_service import Notifier, notify_safely, render
from app.services.subscription_service import (
    advance_renewal_date,
    get_subscription,
    mark_payment_failed,
    select_due_subscriptions,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingConfig:
    """Everything the runner needs from configuration, passed in explicitly."""

    currency: str = "eur"
    cycle_length_days: int = 28
    minimum_charge_cents: int = 50
    pacing_delay_seconds: float = 1.0
    default_sessions_per_cycle: int = 4
    idempotency_keys: bool = True
    operator_email: str = "billing-alerts@cleancycle.example"
    invoice: InvoiceSettings = field(default_factory=InvoiceSettings)

    @classmethod
    def from_settings(cls, settings) -> "BillingConfig":
        return cls(
            currency=settings.billing_currency,
            cycle_length_days=settings.billing_cycle_length_days,
            minimum_charge_cents=settings.billing_minimum_charge_cents,
            pacing_delay_seconds=settings.billing_pacing_delay_seconds,
            default_sessions_per_cycle=settings.billing_default_sessions_per_cycle,
            idempotency_keys=settings.billing_idempotency_keys,
            operator_email=settings.operator_notification_email,
            invoice=InvoiceSettings(
                number_prefix=settings.invoice_number_prefix,
                vat_percentage=settings.billing_vat_percentage,
                currency=settings.billing_currency,
            ),
        )


@dataclass
class SubscriptionResult:
    """Outcome of renewing one subscription."""

    subscription_id: str
    success: bool
    payment_id: str | None = None  # Stripe PaymentIntent ID
    payment_status: str | None = None
    amount_cents: int | None = None
    invoice_number: str | None = None
    next_renewal_date: date | None = None
    error: str | None = None
    error_code: str | None = None


@dataclass
class BillingRunResult:
    """Summary of one billing run."""

    success: bool
    correlation_id: str
    results: list[SubscriptionResult] = field(default_factory=list)
    error: str | None = None

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)


@dataclass
class _Progress:
    """What has already happened for a subscription, kept for the failure result."""

    amount: CycleAmount | None = None
    payment_intent_id: str | None = None
    payment_status: PaymentStatus | None = None
    invoice_number: str | None = None
    invoice_pdf_url: str | None = None
    next_renewal_date: date | None = None


def build_idempotency_key(subscription_id: uuid.UUID | str, cycle_date: date) -> str:
    """Deterministic Stripe idempotency key for one subscription cycle.

    Retrying the charge for the same cycle reuses the key with identical
    parameters, so Stripe returns the original PaymentIntent instead of
    charging twice. If the amount changed in between, Stripe refuses the key
    (``IdempotencyConflict``). A run started after the cycle has advanced
    bills a new cycle date and gets a new key.
    """
    return f"recurring-{subscription_id}-{cycle_date.isoformat()}"


class RecurringBillingRunner:
    """Sequences selection, charging, ledger writes and cycle advancement."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway,
        notifier: Notifier,
        config: BillingConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._notifier = notifier
        self._config = config
        self._sleep = sleep
        self._clock = clock

    async def run(self, correlation_id: str | None = None) -> BillingRunResult:
        """Renew every subscription due today."""
        correlation_id = correlation_id or new_correlation_id("recurring")
        with correlation_scope(correlation_id):
            today = self._clock()
            logger.info("START RECURRING BILLING RUN for %s", today)

            try:
                async with self._session_factory() as db:
                    due = await select_due_subscriptions(db, today)
            except SelectionFailure as e:
                logger.exception("RUN FAILED: subscriptions could not be selected")
                return BillingRunResult(success=False, correlation_id=correlation_id, error=str(e))

            run = BillingRunResult(success=True, correlation_id=correlation_id)
            try:
                for index, subscription in enumerate(due):
                    if index > 0 and self._config.pacing_delay_seconds > 0:
                        await self._sleep(self._config.pacing_delay_seconds)
                    run.results.append(
                        await self.process_subscription(subscription, today, correlation_id)
                    )
            except Exception as e:
                logger.exception("RUN FAILED after %d subscription(s)", run.processed)
                run.success = False
                run.error = str(e)
                return run

            logger.info(
                "RUN COMPLETE: total=%d success=%d failed=%d",
                run.processed,
                run.success_count,
                run.failure_count,
            )
            return run

    async def run_single(
        self, subscription_id: uuid.UUID, correlation_id: str | None = None
    ) -> BillingRunResult:
        """Renew one subscription now, regardless of its renewal date.

        Used for manual testing. The subscription must exist and be active.

        Raises:
            SubscriptionNotFound: if the subscription does not exist.
            ValidationFailure: if it is not active.
        """
        correlation_id = correlation_id or new_correlation_id("manual")
        with correlation_scope(correlation_id):
            logger.info("MANUAL RECURRING BILLING for subscription %s", subscription_id)
            try:
                async with self._session_factory() as db:
                    subscription = await get_subscription(db, subscription_id)
            except SelectionFailure as e:
                logger.exception("RUN FAILED: subscription %s could not be loaded", subscription_id)
                return BillingRunResult(success=False, correlation_id=correlation_id, error=str(e))

            if subscription.status != SubscriptionStatus.ACTIVE:
                raise ValidationFailure(
                    f"Subscription status is '{subscription.status.value}', expected 'active'"
                )

            result = await self.process_subscription(subscription, self._clock(), correlation_id)
            return BillingRunResult(success=True, correlation_id=correlation_id, results=[result])

    async def process_subscription(
        self, subscription: Subscription, today: date, correlation_id: str
    ) -> SubscriptionResult:
        """Renew one subscription; every failure becomes a result, never an exception."""
        logger.info("Processing subscription %s", subscription.id)
        progress = _Progress()

        try:
            await self._renew(subscription, today, correlation_id, progress)
        except Exception as e:
            code = e.code if isinstance(e, RecurringBillingError) else "unexpected_error"
            logger.error("FAILED: subscription %s [%s] %s", subscription.id, code, e)
            await self._handle_failure(subscription, str(e), correlation_id)
            return SubscriptionResult(
                subscription_id=str(subscription.id),
                success=False,
                payment_id=progress.payment_intent_id,
                payment_status=progress.payment_status.value if progress.payment_status else None,
                amount_cents=progress.amount.total_cents if progress.amount else None,
                invoice_number=progress.invoice_number,
                error=str(e),
                error_code=code,
            )

        await self._send_receipt(subscription, progress)
        logger.info("SUCCESS: subscription %s", subscription.id)
        return SubscriptionResult(
            subscription_id=str(subscription.id),
            success=True,
            payment_id=progress.payment_intent_id,
            payment_status=progress.payment_status.value,
            amount_cents=progress.amount.total_cents,
            invoice_number=progress.invoice_number,
            next_renewal_date=progress.next_renewal_date,
        )

    async def _renew(
        self,
        snapshot: Subscription,
        today: date,
        correlation_id: str,
        progress: _Progress,
    ) -> None:
        amount = compute_cycle_amount(snapshot, self._config.default_sessions_per_cycle)
        progress.amount = amount
        self._validate(snapshot, amount)

        await self._charge(snapshot, amount, today, progress)

        async with self._session_factory() as db:
            subscription = await db.merge(snapshot, load=False)

            payment = await record_payment_attempt(
                db,
                subscription=subscription,
                payment_intent_id=progress.payment_intent_id,
                amount_cents=amount.total_cents,
                status=progress.payment_status,
                currency=self._config.currency,
                correlation_id=correlation_id,
            )
            try:
                await db.commit()
            except SQLAlchemyError as e:
                logger.error(
                    "RECONCILIATION REQUIRED: PaymentIntent %s charged but not committed",
                    progress.payment_intent_id,
                )
                raise LedgerWriteFailure(
                    f"Payment record for {progress.payment_intent_id} could not be committed: {e}",
                    payment_intent_id=progress.payment_intent_id,
                ) from e

            await self._record_invoice(db, subscription, payment, amount, today, progress)

            try:
                progress.next_renewal_date = await advance_renewal_date(
                    db, subscription, today, self._config.cycle_length_days
                )
                await db.commit()
            except SQLAlchemyError as e:
                progress.next_renewal_date = None
                raise CycleAdvanceFailure(
                    f"Next renewal date could not be committed for {subscription.id}: {e}"
                ) from e

    def _validate(self, subscription: Subscription, amount: CycleAmount) -> None:
        if not subscription.stripe_payment_method_id:
            raise ValidationFailure("No payment method stored for this subscription")
        if subscription.customer is None:
            raise ValidationFailure(f"Customer not found: {subscription.customer_id}")
        if not subscription.customer.stripe_customer_id:
            raise ValidationFailure("No Stripe customer ID for this customer")
        ensure_chargeable(amount.total_cents, self._config.minimum_charge_cents)

    async def _charge(
        self,
        subscription: Subscription,
        amount: CycleAmount,
        today: date,
        progress: _Progress,
    ) -> None:
        cycle_date = subscription.next_renewal_date or today
        idempotency_key = (
            build_idempotency_key(subscription.id, cycle_date)
            if self._config.idempotency_keys
            else None
        )
        logger.info(
            "Charging %s for subscription %s (%d sessions x %d cents%s)",
            format_cents(amount.total_cents, self._config.currency),
            subscription.id,
            amount.sessions,
            amount.price_per_session_cents,
            ", fixed amount" if amount.is_fixed else "",
        )

        intent = await self._gateway.create_off_session_charge(
            amount_cents=amount.total_cents,
            customer_id=subscription.customer.stripe_customer_id,
            payment_method_id=subscription.stripe_payment_method_id,
            # Stripe rejects a reused idempotency key with different parameters,
            # so nothing run-specific (like the correlation ID) goes in here.
            metadata={
                "subscription_id": str(subscription.id),
                "customer_id": str(subscription.customer_id),
                "cycle_date": cycle_date.isoformat(),
                "sessions_per_cycle": str(amount.sessions),
                "flow": "recurring_billing",
                "type": "subscription_renewal",
            },
            idempotency_key=idempotency_key,
        )

        payment_status = GATEWAY_STATUS_MAP.get(intent.status)
        if payment_status is None:
            raise GatewayChargeFailure(
                f"PaymentIntent status is {intent.status}, expected 'succeeded' or 'processing'",
                status=intent.status,
                payment_intent_id=intent.id,
            )

        progress.payment_intent_id = intent.id
        progress.payment_status = payment_status
        logger.info(
            "Payment %s: %s",
            "processing (direct debit)" if payment_status == PaymentStatus.PROCESSING else "succeeded",
            intent.id,
        )

    async def _record_invoice(self, db, subscription, payment, amount, today, progress) -> None:
        """Invoice generation is best effort; a gap is logged for reconciliation."""
        try:
            invoice = await generate_invoice(
                db,
                subscription=subscription,
                payment=payment,
                amount=amount,
                invoice_settings=self._config.invoice,
                today=today,
                gateway=self._gateway,
            )
            await db.commit()
        except InvoiceGenerationFailure as e:
            logger.warning(
                "Invoice generation failed for payment %s (not fatal, reconcile manually): %s",
                payment.id,
                e,
            )
            return
        except SQLAlchemyError as e:
            logger.warning(
                "Invoice for payment %s could not be committed (not fatal, reconcile manually): %s",
                payment.id,
                e,
            )
            await db.rollback()
            await db.refresh(subscription)
            return
        progress.invoice_number = invoice.invoice_number
        progress.invoice_pdf_url = invoice.pdf_url

    async def _handle_failure(
        self, snapshot: Subscription, reason: str, correlation_id: str
    ) -> None:
        try:
            async with self._session_factory() as db:
                subscription = await db.merge(snapshot, load=False)
                await mark_payment_failed(db, subscription, reason)
                await db.commit()
        except (SQLAlchemyError, IllegalStatusTransition) as e:
            logger.error(
                "Could not mark subscription %s as payment_failed: %s", snapshot.id, e
            )

        await notify_safely(
            self._notifier,
            render(
                "billing_failure_alert",
                recipient=self._config.operator_email,
                subscription_id=str(snapshot.id),
                customer_id=str(snapshot.customer_id),
                reason=reason,
                correlation_id=correlation_id,
            ),
        )

    async def _send_receipt(self, subscription: Subscription, progress: _Progress) -> None:
        customer = subscription.customer
        pdf_line = f"Download invoice: {progress.invoice_pdf_url}\n" if progress.invoice_pdf_url else ""
        await notify_safely(
            self._notifier,
            render(
                "payment_receipt",
                recipient=customer.email,
                first_name=customer.first_name,
                amount=format_cents(progress.amount.total_cents, self._config.currency),
                invoice_number=progress.invoice_number or "to follow",
                next_renewal_date=progress.next_renewal_date.isoformat(),
                pdf_line=pdf_line,
            ),
        )
