"""Notification service — billing receipts and operator alerts.

Delivery itself belongs to an external mail collaborator. ``LogNotifier``
is the default and only logs the rendered message (simulated send).
"""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

TEMPLATES = {
    "payment_receipt": {
        "subject": "Payment processed - CleanCycle",
        "body": (
            "Dear {first_name},\n\n"
            "Your subscription payment has been processed.\n\n"
            "Amount: {amount}\n"
            "Invoice: {invoice_number}\n"
            "Next payment: {next_renewal_date}\n"
            "{pdf_line}"
            "\nThank you for cleaning with CleanCycle!"
        ),
    },
    "billing_failure_alert": {
        "subject": "Recurring billing failed for subscription {subscription_id}",
        "body": (
            "Recurring billing failure\n\n"
            "Subscription ID: {subscription_id}\n"
            "Customer ID: {customer_id}\n"
            "Error: {reason}\n"
            "Run: {correlation_id}\n\n"
            "Action required: contact the customer. The subscription stays in "
            "payment_failed until it is reactivated manually."
        ),
    },
}

VALID_TEMPLATES = set(TEMPLATES.keys())


@dataclass(frozen=True)
class Notification:
    """A rendered message ready for delivery."""

    template: str
    recipient: str
    subject: str
    body: str


def render(template: str, recipient: str, **template_vars: str) -> Notification:
    """Render a template into a Notification.

    Raises:
        ValueError: for an unknown template name.
    """
    if template not in VALID_TEMPLATES:
        raise ValueError(
            f"Invalid template '{template}'. Must be one of: {', '.join(sorted(VALID_TEMPLATES))}"
        )
    tmpl = TEMPLATES[template]
    return Notification(
        template=template,
        recipient=recipient,
        subject=tmpl["subject"].format(**template_vars),
        body=tmpl["body"].format(**template_vars),
    )


class Notifier:
    """Delivery interface for billing notifications."""

    async def send(self, notification: Notification) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Logs notifications instead of sending them."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "Notification sent [%s] to %s: %s",
            notification.template,
            notification.recipient,
            notification.subject,
        )


async def notify_safely(notifier: Notifier, notification: Notification) -> bool:
    """Deliver a notification without letting a delivery failure propagate.

    Returns True when the notifier accepted the message.
    """
    try:
        await notifier.send(notification)
    except Exception as e:
        logger.warning(
            "Notification [%s] to %s failed (not fatal): %s",
            notification.template,
            notification.recipient,
            e,
        )
        return False
    return True
