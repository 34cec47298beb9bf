from __future__ import annotations

from dataclasses import dataclass
from typing import Any


TEMPLATE_TYPES = (
    "checkin_reminder",
    "missed_checkin_alert",
    "verification_request",
    "unlock_pin",
    "failsafe_alert",
)


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str


def _urgency_prefix(urgency: str | None) -> str:
    if urgency == "severe":
        return "URGENT: "
    if urgency == "moderate":
        return "Reminder: "
    return ""


def _checkin_reminder(context: dict[str, Any]) -> RenderedMessage:
    urgency = context.get("urgency")
    days = int(context.get("days_overdue", 0))
    name = context.get("principal_name") or "there"
    subject = f"{_urgency_prefix(urgency)}Your check-in is {days} day(s) overdue"
    lines = [f"Hi {name},", "", f"Your scheduled check-in is {days} day(s) overdue."]
    if urgency == "severe":
        lines.append("Your designated contacts are being asked to confirm your status. Check in now to stop this.")
    elif urgency == "moderate":
        lines.append("If you do not check in soon, your designated contacts will be notified.")
    else:
        lines.append("Please check in when you have a moment.")
    return RenderedMessage(subject=subject, body="\n".join(lines))


def _missed_checkin_alert(context: dict[str, Any]) -> RenderedMessage:
    urgency = context.get("urgency")
    days = int(context.get("days_overdue", 0))
    principal = context.get("principal_name", "")
    subject = f"{_urgency_prefix(urgency)}Check-in alert: {principal} ({days} days overdue)"
    lines = [
        f"Hello {context.get('recipient_name', '')},",
        "",
        f"{principal} has missed their scheduled check-in by {days} day(s).",
        "You are receiving this because you are listed as one of their designated contacts.",
    ]
    if urgency == "severe":
        lines.append("Please try to reach them as soon as possible.")
    return RenderedMessage(subject=subject, body="\n".join(lines))


def _verification_request(context: dict[str, Any]) -> RenderedMessage:
    principal = context.get("principal_name", "")
    subject = f"Please confirm the status of {principal}"
    body = "\n".join(
        [
            f"Hello {context.get('recipient_name', '')},",
            "",
            f"{principal} has not checked in and their grace period has passed.",
            "Please tell us whether they are alive or deceased using your personal link:",
            str(context.get("verification_link", "")),
            "",
            f"This link expires at {context.get('expires_at', '')}.",
        ]
    )
    return RenderedMessage(subject=subject, body=body)


def _unlock_pin(context: dict[str, Any]) -> RenderedMessage:
    principal = context.get("principal_name", "")
    subject = f"Your unlock PIN for {principal}'s will"
    body = "\n".join(
        [
            f"Hello {context.get('recipient_name', '')},",
            "",
            f"The death of {principal} has been reported. Your personal unlock PIN is:",
            str(context.get("pin", "")),
            "",
            "Keep it private. It is shown only once and can be used only once.",
        ]
    )
    return RenderedMessage(subject=subject, body=body)


def _failsafe_alert(context: dict[str, Any]) -> RenderedMessage:
    principal = context.get("principal_name", "")
    subject = f"Action needed: {principal}'s will is still locked"
    body = "\n".join(
        [
            f"Hello {context.get('recipient_name', '')},",
            "",
            f"The will of {principal} has not been unlocked.",
            f"Reason: {context.get('reason', 'unresolved')}.",
            "Please coordinate with the other designated contacts or reach out to support.",
        ]
    )
    return RenderedMessage(subject=subject, body=body)


_RENDERERS = {
    "checkin_reminder": _checkin_reminder,
    "missed_checkin_alert": _missed_checkin_alert,
    "verification_request": _verification_request,
    "unlock_pin": _unlock_pin,
    "failsafe_alert": _failsafe_alert,
}


def render(template_type: str, context: dict[str, Any]) -> RenderedMessage:
    renderer = _RENDERERS.get(template_type)
    if renderer is None:
        raise ValueError(f"Unsupported template: {template_type}")
    return renderer(context)
