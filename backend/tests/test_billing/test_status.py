"""Tests for the subscription status transition table."""

import pytest

from app.billing.errors import IllegalStatusTransition
from app.billing.status import (
    GATEWAY_STATUS_MAP,
    InvoiceStatus,
    PaymentStatus,
    SubscriptionStatus,
    can_transition,
    invoice_status_for,
    transition,
)


class TestTransitions:
    """Test can_transition / transition."""

    def test_renewal_keeps_subscription_active(self):
        assert transition(SubscriptionStatus.ACTIVE, SubscriptionStatus.ACTIVE) == SubscriptionStatus.ACTIVE

    def test_active_can_fail(self):
        assert can_transition(SubscriptionStatus.ACTIVE, SubscriptionStatus.PAYMENT_FAILED)

    def test_payment_failed_only_leaves_to_active(self):
        """Reactivation is the single way out of payment_failed."""
        allowed = [
            s for s in SubscriptionStatus
            if can_transition(SubscriptionStatus.PAYMENT_FAILED, s)
        ]
        assert allowed == [SubscriptionStatus.ACTIVE]

    def test_payment_failed_cannot_be_renewed_again(self):
        assert not can_transition(SubscriptionStatus.PAYMENT_FAILED, SubscriptionStatus.PAYMENT_FAILED)

    def test_stopped_is_terminal(self):
        for target in SubscriptionStatus:
            assert not can_transition(SubscriptionStatus.STOPPED, target)

    def test_illegal_transition_raises_with_both_states(self):
        with pytest.raises(IllegalStatusTransition) as exc_info:
            transition(SubscriptionStatus.QUEUED, SubscriptionStatus.PAYMENT_FAILED)

        err = exc_info.value
        assert err.current == "queued"
        assert err.target == "payment_failed"
        assert err.code == "illegal_status_transition"

    def test_accepts_raw_string_values(self):
        """Values read back from the database may arrive as plain strings."""
        assert transition("active", "payment_failed") == SubscriptionStatus.PAYMENT_FAILED


class TestGatewayStatusMapping:
    """Test mapping of Stripe PaymentIntent statuses."""

    def test_succeeded_is_settled(self):
        assert GATEWAY_STATUS_MAP["succeeded"] == PaymentStatus.SETTLED

    def test_processing_stays_processing(self):
        assert GATEWAY_STATUS_MAP["processing"] == PaymentStatus.PROCESSING

    @pytest.mark.parametrize("status", ["requires_action", "requires_payment_method", "canceled"])
    def test_other_statuses_are_not_accepted(self, status: str):
        assert status not in GATEWAY_STATUS_MAP

    def test_invoice_status_follows_payment(self):
        assert invoice_status_for(PaymentStatus.SETTLED) == InvoiceStatus.PAID
        assert invoice_status_for(PaymentStatus.PROCESSING) == InvoiceStatus.PENDING
