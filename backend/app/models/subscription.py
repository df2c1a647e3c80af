"""Subscription model — a recurring cleaning contract billed every cycle."""

import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, Date, Enum, ForeignKey, Integer, String, Text, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.billing.status import SubscriptionStatus, transition
from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Renewal state for one customer's cleaning contract."""

    __tablename__ = "subscriptions"

    customer_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Stored SEPA/card mandate from the signup SetupIntent
    stripe_payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    mandate_completed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    # Pricing
    price_per_session_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sessions_per_cycle: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fixed_cycle_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    frequency_label: Mapped[str | None] = mapped_column(String(50), nullable=True)  # display only

    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(
            SubscriptionStatus,
            native_enum=False,
            length=50,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        default=SubscriptionStatus.QUEUED,
        index=True,
    )
    next_renewal_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)

    # Last billing failure, cleared on reactivation
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    customer: Mapped["Customer"] = relationship(back_populates="subscriptions", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def transition_to(self, target: SubscriptionStatus) -> None:
        """Change status through the transition table."""
        self.status = transition(self.status, target)

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, customer_id={self.customer_id}, "
            f"status={self.status}, next_renewal_date={self.next_renewal_date})>"
        )
