from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from willguard.domain.models import CheckinPointer, CheckinRecord


async def get_pointer(session: AsyncSession, principal_id: str) -> CheckinPointer | None:
    return await session.get(CheckinPointer, principal_id)


async def get_current(session: AsyncSession, principal_id: str) -> CheckinRecord | None:
    # Resolve "current" through the pointer row, never by timestamp ordering.
    result = await session.execute(
        select(CheckinRecord)
        .join(CheckinPointer, CheckinPointer.current_checkin_id == CheckinRecord.id)
        .where(CheckinPointer.principal_id == principal_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def append_record(session: AsyncSession, record: CheckinRecord) -> CheckinRecord:
    # Append history and move the pointer in the caller's transaction.
    session.add(record)
    await session.flush()
    result = await session.execute(
        update(CheckinPointer)
        .where(CheckinPointer.principal_id == record.principal_id)
        .values(
            current_checkin_id=record.id,
            version=CheckinPointer.version + 1,
            updated_at=record.checked_in_at,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        session.add(
            CheckinPointer(
                principal_id=record.principal_id,
                current_checkin_id=record.id,
                version=1,
                updated_at=record.checked_in_at,
            )
        )
        await session.flush()
    return record


async def list_history(session: AsyncSession, principal_id: str, *, limit: int | None = None) -> list[CheckinRecord]:
    stmt = (
        select(CheckinRecord)
        .where(CheckinRecord.principal_id == principal_id)
        .order_by(CheckinRecord.checked_in_at.desc(), CheckinRecord.created_at.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_past_deadline(session: AsyncSession, *, now: datetime) -> list[CheckinRecord]:
    # Current records whose deadline has passed; grace is applied by the caller.
    result = await session.execute(
        select(CheckinRecord)
        .join(CheckinPointer, CheckinPointer.current_checkin_id == CheckinRecord.id)
        .where(CheckinRecord.next_check_in < now)
        .order_by(CheckinRecord.next_check_in)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def delete_history(session: AsyncSession, principal_id: str) -> int:
    await session.execute(delete(CheckinPointer).where(CheckinPointer.principal_id == principal_id))
    result = await session.execute(delete(CheckinRecord).where(CheckinRecord.principal_id == principal_id))
    return int(result.rowcount or 0)
