"""Cycle amount calculation and VAT split for recurring invoices."""

from dataclasses import dataclass

from app.billing.errors import BelowMinimumAmount


@dataclass(frozen=True)
class CycleAmount:
    """Amount charged for one renewal cycle."""

    total_cents: int
    sessions: int
    price_per_session_cents: int
    is_fixed: bool  # True when the subscription carries a fixed cycle amount


@dataclass(frozen=True)
class VatBreakdown:
    """VAT-inclusive total split into subtotal and VAT, all in cents."""

    subtotal_cents: int
    vat_cents: int
    total_cents: int
    vat_percentage: int


def compute_cycle_amount(subscription, default_sessions: int = 4) -> CycleAmount:
    """Amount for one cycle: the fixed override if set, else sessions x price."""
    sessions = subscription.sessions_per_cycle or default_sessions
    price = subscription.price_per_session_cents or 0

    if subscription.fixed_cycle_amount_cents:
        return CycleAmount(
            total_cents=subscription.fixed_cycle_amount_cents,
            sessions=sessions,
            price_per_session_cents=price,
            is_fixed=True,
        )
    return CycleAmount(
        total_cents=sessions * price,
        sessions=sessions,
        price_per_session_cents=price,
        is_fixed=False,
    )


def ensure_chargeable(amount_cents: int, minimum_cents: int) -> None:
    """Raise BelowMinimumAmount when the gateway would refuse the amount."""
    if amount_cents < minimum_cents:
        raise BelowMinimumAmount(amount_cents, minimum_cents)


def split_vat(total_cents: int, vat_percentage: int) -> VatBreakdown:
    """Split a VAT-inclusive total. Rounding goes to the subtotal."""
    subtotal = round(total_cents * 100 / (100 + vat_percentage))
    return VatBreakdown(
        subtotal_cents=subtotal,
        vat_cents=total_cents - subtotal,
        total_cents=total_cents,
        vat_percentage=vat_percentage,
    )


def format_cents(amount_cents: int, currency: str = "eur") -> str:
    """Render an amount for messages, e.g. ``EUR 100.00``."""
    return f"{currency.upper()} {amount_cents / 100:.2f}"
