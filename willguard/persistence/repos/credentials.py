from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from willguard.domain.models import UnlockCredential


async def list_for_request(session: AsyncSession, request_id: str) -> list[UnlockCredential]:
    result = await session.execute(
        select(UnlockCredential)
        .where(UnlockCredential.request_id == request_id)
        .order_by(UnlockCredential.person_type, UnlockCredential.person_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def mark_used(session: AsyncSession, credential_ids: list[str], *, now: datetime) -> int:
    # Only flip credentials that are still live; the caller compares the count.
    if not credential_ids:
        return 0
    result = await session.execute(
        update(UnlockCredential)
        .where(
            UnlockCredential.id.in_(credential_ids),
            UnlockCredential.used.is_(False),
            UnlockCredential.invalidated_at.is_(None),
        )
        .values(used=True, used_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def invalidate_for_request(session: AsyncSession, request_id: str, *, now: datetime) -> int:
    result = await session.execute(
        update(UnlockCredential)
        .where(
            UnlockCredential.request_id == request_id,
            UnlockCredential.invalidated_at.is_(None),
        )
        .values(invalidated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
