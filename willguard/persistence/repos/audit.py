from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from willguard.domain.models import AuditEvent


async def list_events(
    session: AsyncSession,
    *,
    principal_id: str,
    event_type: str | None = None,
    request_id: str | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    stmt = select(AuditEvent).where(AuditEvent.principal_id == principal_id)
    if event_type:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    if request_id:
        stmt = stmt.where(AuditEvent.request_id == request_id)
    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
