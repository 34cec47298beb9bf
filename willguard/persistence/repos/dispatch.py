from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from willguard.domain.models import NotificationCursor, NotificationDispatchLog


async def get_cursor(session: AsyncSession, *, principal_id: str, action: str) -> NotificationCursor | None:
    return await session.get(NotificationCursor, (principal_id, action), populate_existing=True)


async def record_dispatch(
    session: AsyncSession,
    log: NotificationDispatchLog,
    *,
    advance_cursor: bool = True,
) -> NotificationDispatchLog:
    # Log entry and cursor move land in the same transaction.
    session.add(log)
    await session.flush()
    if not advance_cursor:
        return log
    result = await session.execute(
        update(NotificationCursor)
        .where(
            NotificationCursor.principal_id == log.principal_id,
            NotificationCursor.action == log.action,
        )
        .values(last_sent_at=log.occurred_at, dispatch_log_id=log.id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        session.add(
            NotificationCursor(
                principal_id=log.principal_id,
                action=log.action,
                last_sent_at=log.occurred_at,
                dispatch_log_id=log.id,
            )
        )
        await session.flush()
    return log


async def list_dispatches(
    session: AsyncSession,
    *,
    principal_id: str,
    action: str | None = None,
) -> list[NotificationDispatchLog]:
    stmt = select(NotificationDispatchLog).where(NotificationDispatchLog.principal_id == principal_id)
    if action:
        stmt = stmt.where(NotificationDispatchLog.action == action)
    stmt = stmt.order_by(NotificationDispatchLog.occurred_at.desc())
    result = await session.execute(stmt)
    return list(result.scalars().all())
