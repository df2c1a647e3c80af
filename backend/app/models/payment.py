"""PaymentAttempt model — one charge against a subscription."""

import uuid

from sqlalchemy import Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.billing.status import PaymentStatus
from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class PaymentAttempt(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A recurring charge as accepted by Stripe.

    Rows are written once by the billing run. Settlement of ``processing``
    payments is recorded by a separate process.
    """

    __tablename__ = "payment_attempts"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="eur")
    stripe_payment_intent_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(
            PaymentStatus,
            native_enum=False,
            length=50,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
    )
    method: Mapped[str] = mapped_column(String(50), nullable=False, default="recurring_mandate")
    correlation_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    # Relationships
    invoice: Mapped["Invoice | None"] = relationship(  # noqa: F821
        "Invoice", back_populates="payment_attempt", uselist=False, lazy="selectin"
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentAttempt(id={self.id}, subscription_id={self.subscription_id}, "
            f"amount_cents={self.amount_cents}, status={self.status})>"
        )
