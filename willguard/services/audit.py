from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from willguard.core.clock import utc_now
from willguard.domain.models import AuditEvent


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["pin", "token", "secret", "password", "api_key", "authorization", "link"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Credentials and verification links must never reach the audit trail.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_event(
    *,
    session: AsyncSession,
    principal_id: str,
    event_type: str,
    actor_type: str = "system",
    actor_id: str | None = None,
    request_id: str | None = None,
    from_state: str | None = None,
    to_state: str | None = None,
    outcome: str = "success",
    metadata: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
    commit: bool = False,
) -> None:
    """Stage a lifecycle audit row in the caller's transaction.

    Audit writes are best effort: a failure is logged and never aborts the
    surrounding engine operation.
    """
    event = AuditEvent(
        occurred_at=occurred_at or utc_now(),
        principal_id=principal_id,
        request_id=request_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        from_state=from_state,
        to_state=to_state,
        outcome=outcome,
        metadata_json=sanitize_metadata(metadata or {}),
    )
    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        logger.warning(
            "audit_event_write_failed event_type=%s principal_id=%s request_id=%s",
            event_type,
            principal_id,
            request_id,
            exc_info=exc,
        )
