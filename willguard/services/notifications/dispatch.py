from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from willguard.domain.directory import PartyProfile, PrincipalProfile
from willguard.domain.models import NotificationDispatchLog
from willguard.persistence.repos import dispatch as dispatch_repo
from willguard.services.notifications.channel import NotificationChannel, Recipient, SendResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Delivery:
    recipient: Recipient
    template_type: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class DispatchSummary:
    results: list[dict[str, Any]] = field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return sum(1 for item in self.results if item["success"])

    @property
    def failed_count(self) -> int:
        return sum(1 for item in self.results if not item["success"])

    def as_details(self) -> dict[str, Any]:
        return {"recipients": list(self.results)}


def principal_recipients(principal: PrincipalProfile) -> list[Recipient]:
    # One recipient per enabled preference.
    recipients: list[Recipient] = []
    if principal.notifications.email and principal.email:
        recipients.append(
            Recipient(kind="principal", id=principal.id, name=principal.display_name, channel="email", address=principal.email)
        )
    if principal.notifications.push and principal.push_token:
        recipients.append(
            Recipient(kind="principal", id=principal.id, name=principal.display_name, channel="push", address=principal.push_token)
        )
    return recipients


def party_recipient(party: PartyProfile) -> Recipient | None:
    if not party.email:
        return None
    return Recipient(kind="party", id=party.id, name=party.name, channel="email", address=party.email, role=party.role)


async def _send_one(channel: NotificationChannel, delivery: Delivery) -> dict[str, Any]:
    recipient = delivery.recipient
    try:
        result = await channel.send(recipient, delivery.template_type, delivery.context)
    except Exception as exc:  # noqa: BLE001 - one failing recipient must not abort the dispatch
        logger.warning(
            "notification_channel_error template=%s recipient_id=%s",
            delivery.template_type,
            recipient.id,
            exc_info=exc,
        )
        result = SendResult(success=False, error=type(exc).__name__)
    return {
        "recipient_kind": recipient.kind,
        "recipient_id": recipient.id,
        "role": recipient.role,
        "channel": recipient.channel,
        "template": delivery.template_type,
        "success": bool(result.success),
        "message_id": result.channel_message_id,
        "error": result.error,
    }


async def send_all(channel: NotificationChannel, deliveries: list[Delivery]) -> DispatchSummary:
    """Send every delivery and wait for all of them before returning."""
    if not deliveries:
        return DispatchSummary()
    results = await asyncio.gather(*(_send_one(channel, delivery) for delivery in deliveries))
    return DispatchSummary(results=list(results))


async def record_summary(
    session: AsyncSession,
    *,
    principal_id: str,
    action: str,
    summary: DispatchSummary,
    occurred_at: datetime,
    urgency: str | None = None,
    request_id: str | None = None,
    extra: dict[str, Any] | None = None,
) -> NotificationDispatchLog:
    """Append one dispatch log entry for a completed batch of sends.

    The per-action cursor only moves when at least one send succeeded, so a
    batch that reached nobody is never treated as "already notified".
    """
    details = summary.as_details()
    if extra:
        details.update(extra)
    log = NotificationDispatchLog(
        id=uuid4().hex,
        principal_id=principal_id,
        action=action,
        occurred_at=occurred_at,
        urgency=urgency,
        request_id=request_id,
        sent_count=summary.sent_count,
        failed_count=summary.failed_count,
        details_json=details,
    )
    return await dispatch_repo.record_dispatch(session, log, advance_cursor=summary.sent_count > 0)
