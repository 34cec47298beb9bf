from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from willguard.core.errors import NotFoundError
from willguard.domain.directory import (
    NotificationPrefs,
    PartyProfile,
    PrincipalProfile,
    UnlockMechanisms,
)
from willguard.domain.models import Party, Principal


def _principal_profile(row: Principal) -> PrincipalProfile:
    return PrincipalProfile(
        id=row.id,
        display_name=row.display_name,
        email=row.email,
        push_token=row.push_token,
        checkin_enabled=bool(row.checkin_enabled),
        checkin_interval_days=int(row.checkin_interval_days),
        grace_period_days=int(row.grace_period_days),
        verification_window_hours=int(row.verification_window_hours),
        notifications=NotificationPrefs(email=bool(row.notify_email), push=bool(row.notify_push)),
        unlock=UnlockMechanisms(
            pin_system=bool(row.pin_system_enabled),
            executor_override=bool(row.executor_override_enabled),
            trusted_contact_override=bool(row.trusted_contact_override_enabled),
            failsafe=bool(row.failsafe_enabled),
        ),
    )


def _party_profile(row: Party) -> PartyProfile:
    return PartyProfile(
        id=row.id,
        principal_id=row.principal_id,
        role=row.role,
        name=row.name,
        email=row.email,
        phone=row.phone,
        is_primary_executor=bool(row.is_primary_executor),
        is_executor=bool(row.is_executor),
    )


class SqlPrincipalDirectory:
    """Principal directory backed by the ``principals`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_principal(self, principal_id: str) -> PrincipalProfile:
        row = await self._session.get(Principal, principal_id)
        if row is None:
            raise NotFoundError(f"principal {principal_id} not found")
        return _principal_profile(row)


class SqlPartyDirectory:
    """Party directory backed by the ``parties`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_parties(self, principal_id: str) -> list[PartyProfile]:
        result = await self._session.execute(
            select(Party).where(Party.principal_id == principal_id).order_by(Party.role, Party.id)
        )
        return [_party_profile(row) for row in result.scalars().all()]
