from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Protocol
from uuid import uuid4

import httpx

from willguard.core.config import Settings, get_settings
from willguard.services.notifications.templates import render
from willguard.services.resilience import RetryPolicy, notification_retry_policy, retry_async


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    # principal or party.
    kind: str
    id: str
    name: str
    # email or push.
    channel: str
    address: str
    role: str | None = None


@dataclass(frozen=True)
class SendResult:
    success: bool
    channel_message_id: str | None = None
    error: str | None = None


class NotificationChannel(Protocol):
    async def send(self, recipient: Recipient, template_type: str, context: dict[str, Any]) -> SendResult: ...


class HttpNotificationChannel:
    """Delivers rendered templates to an email API or a push webhook.

    ``send`` never raises for delivery problems: every failure comes back as an
    unsuccessful :class:`SendResult` so one recipient cannot abort a dispatch.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._policy = policy or notification_retry_policy()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse one client per channel for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.notify_send_timeout_ms / 1000.0)
        return self._client

    def _request_for(self, recipient: Recipient, template_type: str, context: dict[str, Any]) -> tuple[str, dict[str, Any], dict[str, str]]:
        message = render(template_type, {"recipient_name": recipient.name, **context})
        if recipient.channel == "push":
            payload = {
                "token": recipient.address,
                "title": message.subject,
                "body": message.body,
                "data": {"template": template_type},
            }
            return self._settings.notify_push_webhook_url, payload, {}
        headers: dict[str, str] = {}
        if self._settings.notify_email_api_key:
            headers["Authorization"] = f"Bearer {self._settings.notify_email_api_key}"
        payload = {
            "from": self._settings.notify_from_address,
            "to": [recipient.address],
            "subject": message.subject,
            "text": message.body,
            "tags": [{"name": "template", "value": template_type}],
        }
        return self._settings.notify_email_api_url, payload, headers

    async def send(self, recipient: Recipient, template_type: str, context: dict[str, Any]) -> SendResult:
        if recipient.channel not in {"email", "push"}:
            return SendResult(success=False, error=f"unsupported channel {recipient.channel}")
        if not recipient.address:
            return SendResult(success=False, error="missing address")
        try:
            destination, payload, headers = self._request_for(recipient, template_type, context)
        except ValueError as exc:
            return SendResult(success=False, error=str(exc))
        if destination.startswith("noop://"):
            return SendResult(success=True, channel_message_id=f"noop-{uuid4().hex}")

        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.post(destination, json=payload, headers=headers)
            if response.status_code >= 400:
                raise httpx.HTTPStatusError(
                    f"notification rejected ({response.status_code})",
                    request=response.request,
                    response=response,
                )
            return response

        try:
            response = await retry_async(_call, policy=self._policy)
        except (httpx.HTTPError, TimeoutError) as exc:
            logger.warning(
                "notification_send_failed channel=%s template=%s recipient_id=%s error=%s",
                recipient.channel,
                template_type,
                recipient.id,
                type(exc).__name__,
            )
            return SendResult(success=False, error=str(exc) or type(exc).__name__)

        message_id: str | None = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            raw_id = body.get("id") or body.get("message_id")
            message_id = str(raw_id) if raw_id is not None else None
        return SendResult(success=True, channel_message_id=message_id)
