"""Tests for cycle amount calculation and the VAT split."""

from types import SimpleNamespace

import pytest

from app.billing.errors import BelowMinimumAmount, ValidationFailure
from app.billing.pricing import compute_cycle_amount, ensure_chargeable, format_cents, split_vat


def _subscription(**fields) -> SimpleNamespace:
    defaults = {
        "price_per_session_cents": 2500,
        "sessions_per_cycle": 4,
        "fixed_cycle_amount_cents": None,
    }
    defaults.update(fields)
    return SimpleNamespace(**defaults)


class TestComputeCycleAmount:
    """Test compute_cycle_amount."""

    def test_sessions_times_price(self):
        amount = compute_cycle_amount(_subscription())
        assert amount.total_cents == 10000
        assert amount.sessions == 4
        assert amount.is_fixed is False

    def test_missing_sessions_defaults_to_four(self):
        amount = compute_cycle_amount(_subscription(sessions_per_cycle=None, price_per_session_cents=3000))
        assert amount.sessions == 4
        assert amount.total_cents == 12000

    def test_default_sessions_is_configurable(self):
        amount = compute_cycle_amount(_subscription(sessions_per_cycle=None), default_sessions=2)
        assert amount.total_cents == 5000

    def test_fixed_amount_overrides_calculation(self):
        amount = compute_cycle_amount(_subscription(fixed_cycle_amount_cents=8900))
        assert amount.total_cents == 8900
        assert amount.is_fixed is True
        assert amount.sessions == 4

    def test_zero_fixed_amount_counts_as_unset(self):
        amount = compute_cycle_amount(_subscription(fixed_cycle_amount_cents=0))
        assert amount.total_cents == 10000
        assert amount.is_fixed is False

    def test_missing_price_gives_zero(self):
        amount = compute_cycle_amount(_subscription(price_per_session_cents=None))
        assert amount.total_cents == 0


class TestEnsureChargeable:
    """Test ensure_chargeable."""

    def test_minimum_itself_is_allowed(self):
        ensure_chargeable(50, 50)

    def test_below_minimum_raises(self):
        with pytest.raises(BelowMinimumAmount) as exc_info:
            ensure_chargeable(49, 50)

        assert exc_info.value.amount == 49
        assert exc_info.value.code == "below_minimum_amount"

    def test_below_minimum_is_a_validation_failure(self):
        with pytest.raises(ValidationFailure):
            ensure_chargeable(0, 50)


class TestSplitVat:
    """Test split_vat for VAT-inclusive totals."""

    def test_standard_rate(self):
        vat = split_vat(12100, 21)
        assert vat.subtotal_cents == 10000
        assert vat.vat_cents == 2100
        assert vat.total_cents == 12100

    def test_parts_always_add_up(self):
        vat = split_vat(10000, 21)
        assert vat.subtotal_cents == 8264
        assert vat.vat_cents == 1736
        assert vat.subtotal_cents + vat.vat_cents == 10000

    def test_zero_rate(self):
        vat = split_vat(5000, 0)
        assert vat.subtotal_cents == 5000
        assert vat.vat_cents == 0


def test_format_cents():
    assert format_cents(10000) == "EUR 100.00"
    assert format_cents(1999, "usd") == "USD 19.99"
