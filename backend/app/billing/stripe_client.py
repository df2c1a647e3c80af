"""Async Stripe API wrapper for CleanCycle recurring billing."""

import logging

import stripe
from stripe import StripeClient

from app.billing.errors import GatewayChargeFailure, IdempotencyConflict

logger = logging.getLogger(__name__)


class StripeGateway:
    """Payment gateway backed by Stripe.

    The secret key is passed in rather than read from global settings, so a
    billing run can be pointed at any account (or replaced by a fake in tests).
    """

    def __init__(self, secret_key: str, currency: str = "eur") -> None:
        self.currency = currency
        self._secret_key = secret_key
        self._stripe: StripeClient | None = None

    @property
    def _client(self) -> StripeClient:
        """StripeClient with async HTTP support, created on first use."""
        if self._stripe is None:
            self._stripe = StripeClient(self._secret_key, http_client=stripe.HTTPXClient())
        return self._stripe

    async def create_customer(self, email: str, name: str, customer_ref: str) -> stripe.Customer:
        """Create a Stripe customer linked to a CleanCycle customer."""
        logger.info("Creating Stripe customer for %s (%s)", customer_ref, email)
        customer = await self._client.v1.customers.create_async(
            params={
                "email": email,
                "name": name,
                "metadata": {"cleancycle_customer_id": customer_ref},
            }
        )
        logger.info("Created Stripe customer %s for %s", customer.id, customer_ref)
        return customer

    async def create_off_session_charge(
        self,
        *,
        amount_cents: int,
        customer_id: str,
        payment_method_id: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> stripe.PaymentIntent:
        """Create and confirm a PaymentIntent against a stored mandate.

        The customer is not present, so the intent is confirmed immediately
        with ``off_session``. Cards come back ``succeeded``; SEPA debits come
        back ``processing`` and settle later.

        Raises:
            IdempotencyConflict: if the key was used before with other parameters.
            GatewayChargeFailure: if Stripe rejects the request.
        """
        logger.info(
            "Creating off-session PaymentIntent for customer %s: %d %s",
            customer_id,
            amount_cents,
            self.currency,
        )
        options: dict[str, str] = {}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key

        try:
            intent = await self._client.v1.payment_intents.create_async(
                params={
                    "amount": amount_cents,
                    "currency": self.currency,
                    "customer": customer_id,
                    "payment_method": payment_method_id,
                    "off_session": True,
                    "confirm": True,
                    "metadata": metadata,
                },
                options=options,
            )
        except stripe.IdempotencyError as e:
            logger.error(
                "RECONCILIATION REQUIRED: idempotency key %s reused with different "
                "parameters for customer %s: %s",
                idempotency_key,
                customer_id,
                e,
            )
            raise IdempotencyConflict(
                f"Idempotency key {idempotency_key} was already used with different parameters",
                status="idempotency_error",
            ) from e
        except stripe.StripeError as e:
            logger.error("Stripe charge error for customer %s: %s", customer_id, e)
            raise GatewayChargeFailure(
                f"PaymentIntent creation failed: {e.user_message or e}",
                status=getattr(e, "code", None),
                payment_intent_id=_intent_id_from_error(e),
            ) from e

        logger.info("PaymentIntent %s confirmed with status %s", intent.id, intent.status)
        return intent

    async def create_invoice_document(
        self,
        *,
        customer_id: str,
        description: str,
        line_description: str,
        amount_cents: int,
        metadata: dict[str, str],
        mark_paid: bool,
    ) -> stripe.Invoice:
        """Create a finalized Stripe invoice for a payment that already happened.

        The invoice is only a document: it is never used to collect money.
        When ``mark_paid`` is set it is closed as paid out of band, otherwise
        it stays open until the debit settles.
        """
        logger.info("Creating invoice document for customer %s", customer_id)
        invoice = await self._client.v1.invoices.create_async(
            params={
                "customer": customer_id,
                "collection_method": "charge_automatically",
                "auto_advance": False,
                "description": description,
                "metadata": metadata,
            }
        )
        await self._client.v1.invoice_items.create_async(
            params={
                "customer": customer_id,
                "invoice": invoice.id,
                "description": line_description,
                "amount": amount_cents,
                "currency": self.currency,
            }
        )
        invoice = await self._client.v1.invoices.finalize_invoice_async(invoice.id)
        if mark_paid:
            invoice = await self._client.v1.invoices.pay_async(
                invoice.id, params={"paid_out_of_band": True}
            )
        logger.info("Invoice document %s ready (%s)", invoice.id, invoice.status)
        return invoice


def _intent_id_from_error(error: stripe.StripeError) -> str | None:
    """Card declines carry the failed PaymentIntent in the error body."""
    body = error.json_body or {}
    intent = body.get("error", {}).get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return None
