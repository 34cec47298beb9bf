from willguard.services.notifications.channel import (
    HttpNotificationChannel,
    NotificationChannel,
    Recipient,
    SendResult,
)
from willguard.services.notifications.dispatch import (
    Delivery,
    DispatchSummary,
    party_recipient,
    principal_recipients,
    record_summary,
    send_all,
)
from willguard.services.notifications.templates import RenderedMessage, render

__all__ = [
    "NotificationChannel",
    "HttpNotificationChannel",
    "Recipient",
    "SendResult",
    "Delivery",
    "DispatchSummary",
    "principal_recipients",
    "party_recipient",
    "send_all",
    "record_summary",
    "RenderedMessage",
    "render",
]
