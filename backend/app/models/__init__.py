"""SQLAlchemy models for CleanCycle.

All models are imported here so that ``Base.metadata`` knows every table
before ``create_all`` runs. If you add a new model, import it in this file.
"""

from app.models.customer import Customer
from app.models.invoice import Invoice
from app.models.payment import PaymentAttempt
from app.models.subscription import Subscription

__all__ = [
    "Customer",
    "Invoice",
    "PaymentAttempt",
    "Subscription",
]
