"""Ledger service — payment records and invoices for recurring charges."""

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import Integer, cast, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import InvoiceGenerationFailure, LedgerWriteFailure
from app.billing.pricing import CycleAmount, split_vat
from app.billing.status import PaymentStatus, invoice_status_for
from app.models.invoice import Invoice
from app.models.payment import PaymentAttempt
from app.models.subscription import Subscription

logger = logging.getLogger(__name__)

# Allocation retries when a concurrent run takes the same invoice number.
INVOICE_NUMBER_ATTEMPTS = 3


@dataclass(frozen=True)
class InvoiceSettings:
    """Invoice numbering and tax parameters."""

    number_prefix: str = "CC"
    vat_percentage: int = 21
    currency: str = "eur"


async def record_payment_attempt(
    db: AsyncSession,
    *,
    subscription: Subscription,
    payment_intent_id: str,
    amount_cents: int,
    status: PaymentStatus,
    currency: str,
    correlation_id: str | None,
) -> PaymentAttempt:
    """Persist the outcome of a charge Stripe has already accepted.

    Raises:
        LedgerWriteFailure: if the row cannot be written. The money has moved
            at this point, so the caller must surface it for reconciliation.
    """
    # A failed flush leaves the session unusable; nothing below may touch ORM state.
    subscription_id = subscription.id
    payment = PaymentAttempt(
        subscription_id=subscription_id,
        customer_id=subscription.customer_id,
        amount_cents=amount_cents,
        currency=currency,
        stripe_payment_intent_id=payment_intent_id,
        status=status,
        correlation_id=correlation_id,
    )
    try:
        db.add(payment)
        await db.flush()
    except SQLAlchemyError as e:
        logger.error(
            "RECONCILIATION REQUIRED: PaymentIntent %s for subscription %s was charged "
            "but the payment record could not be saved: %s",
            payment_intent_id,
            subscription_id,
            e,
        )
        raise LedgerWriteFailure(
            f"Payment record for {payment_intent_id} could not be saved: {e}",
            payment_intent_id=payment_intent_id,
        ) from e

    logger.info("Payment %s saved for PaymentIntent %s", payment.id, payment_intent_id)
    return payment


async def next_invoice_number(db: AsyncSession, prefix: str, year: int) -> str:
    """Next invoice number for the year, e.g. ``CC-2026-007``.

    Continues from the highest number already used, so removed invoices
    leave a gap instead of freeing their number.
    """
    head = f"{prefix}-{year}-"
    result = await db.execute(
        select(func.max(cast(func.substr(Invoice.invoice_number, len(head) + 1), Integer))).where(
            Invoice.invoice_number.like(f"{head}%")
        )
    )
    highest = result.scalar_one() or 0
    return f"{head}{highest + 1:03d}"


async def _insert_invoice(db: AsyncSession, fields: dict, prefix: str, year: int) -> Invoice:
    """Allocate a number and insert the invoice, retrying when the number is taken."""
    for attempt in range(1, INVOICE_NUMBER_ATTEMPTS + 1):
        number = None
        try:
            async with db.begin_nested():
                number = await next_invoice_number(db, prefix, year)
                invoice = Invoice(invoice_number=number, **fields)
                db.add(invoice)
                await db.flush()
            return invoice
        except IntegrityError as e:
            if attempt == INVOICE_NUMBER_ATTEMPTS:
                raise InvoiceGenerationFailure(f"Invoice {number} could not be saved: {e}") from e
            logger.warning(
                "Invoice number %s already taken (attempt %d), allocating again", number, attempt
            )
        except SQLAlchemyError as e:
            raise InvoiceGenerationFailure(f"Invoice {number} could not be saved: {e}") from e


async def generate_invoice(
    db: AsyncSession,
    *,
    subscription: Subscription,
    payment: PaymentAttempt,
    amount: CycleAmount,
    invoice_settings: InvoiceSettings,
    today: date,
    gateway=None,
) -> Invoice:
    """Create the invoice for a recurring payment.

    The row is inserted in a savepoint first, so a failure leaves the
    payment intact. A Stripe-hosted document is attached afterwards when a
    gateway and Stripe customer are available; if that part fails the
    invoice is kept without a PDF.

    Raises:
        InvoiceGenerationFailure: if the invoice row cannot be written.
    """
    vat = split_vat(amount.total_cents, invoice_settings.vat_percentage)
    description = (
        f"Cleaning subscription renewal - {amount.sessions} sessions per cycle"
    )
    status = invoice_status_for(payment.status)
    # Read before the insert: a rolled-back savepoint can expire loaded state.
    stripe_customer_id = subscription.customer.stripe_customer_id if subscription.customer else None
    document_metadata = {
        "subscription_id": str(subscription.id),
        "payment_intent_id": payment.stripe_payment_intent_id,
        "correlation_id": payment.correlation_id or "",
    }
    mark_paid = payment.status == PaymentStatus.SETTLED
    payment_id = payment.id

    fields = {
        "subscription_id": subscription.id,
        "payment_attempt_id": payment_id,
        "customer_id": subscription.customer_id,
        "invoice_date": today,
        "subtotal_cents": vat.subtotal_cents,
        "vat_percentage": vat.vat_percentage,
        "vat_cents": vat.vat_cents,
        "total_cents": vat.total_cents,
        "currency": invoice_settings.currency,
        "status": status,
        "description": description,
        "correlation_id": payment.correlation_id,
    }
    invoice = await _insert_invoice(db, fields, invoice_settings.number_prefix, today.year)
    logger.info(
        "Invoice %s saved for payment %s (%s)", invoice.invoice_number, payment_id, status.value
    )

    if gateway is not None and stripe_customer_id:
        try:
            document = await gateway.create_invoice_document(
                customer_id=stripe_customer_id,
                description=description,
                line_description=f"Cleaning services ({amount.sessions} sessions)",
                amount_cents=amount.total_cents,
                metadata={"invoice_number": invoice.invoice_number, **document_metadata},
                mark_paid=mark_paid,
            )
        except Exception as e:
            logger.warning(
                "Stripe invoice document for %s failed (invoice kept without PDF): %s",
                invoice.invoice_number,
                e,
            )
        else:
            invoice.stripe_invoice_id = document.id
            invoice.pdf_url = document.invoice_pdf or document.hosted_invoice_url

    return invoice
