from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from willguard.core.config import get_settings
from willguard.persistence.db import get_session
from willguard.services.notifications import HttpNotificationChannel, NotificationChannel
from willguard.services.payloads import HttpPayloadStore, PayloadStore


_channel: NotificationChannel | None = None
_payload_store: PayloadStore | None = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


def get_notification_channel() -> NotificationChannel:
    global _channel
    if _channel is None:
        _channel = HttpNotificationChannel()
    return _channel


def get_payload_store() -> PayloadStore:
    global _payload_store
    if _payload_store is None:
        _payload_store = HttpPayloadStore()
    return _payload_store


def require_admin_token(
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> str:
    # Admin routes stay closed until a shared token is configured.
    expected = get_settings().admin_api_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "ADMIN_API_DISABLED", "message": "Admin token is not configured"},
        )
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing or invalid admin token"},
        )
    return "admin"
