from __future__ import annotations

from datetime import datetime, timedelta
import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from willguard.core.clock import as_utc, utc_now
from willguard.core.errors import NotEnabledError, NotFoundError
from willguard.domain.directory import PrincipalDirectory
from willguard.domain.models import CheckinRecord
from willguard.domain.state import LifecycleEvent, LifecycleState, transition
from willguard.persistence.repos import checkins as checkins_repo
from willguard.persistence.repos import verification as verification_repo
from willguard.persistence.repos.directory import SqlPrincipalDirectory
from willguard.services.audit import record_event


logger = logging.getLogger(__name__)

CHECKIN_ALIVE = "alive"
CHECKIN_VERIFICATION_TRIGGERED = "verification_triggered"


def is_overdue(record: CheckinRecord, grace_period_days: int, now: datetime) -> bool:
    # Strictly past deadline plus grace; exactly at the boundary is not overdue.
    return as_utc(now) > as_utc(record.next_check_in) + timedelta(days=grace_period_days)


async def _cancel_pending_request(session: AsyncSession, principal_id: str, *, now: datetime) -> None:
    pending = await verification_repo.get_pending_for_principal(session, principal_id)
    if pending is None:
        return
    target = transition(pending.stage, LifecycleEvent.CHECKIN_RECORDED)
    moved = await verification_repo.compare_and_set_stage(
        session,
        pending.id,
        expected=LifecycleState.VERIFICATION_PENDING,
        target=target,
        values={"status": "completed", "result": "confirmed_alive", "resolved_at": now},
    )
    if not moved:
        # A party report or the expiry sweep resolved it first.
        logger.info("checkin_cancel_lost principal_id=%s request_id=%s", principal_id, pending.id)
        return
    await record_event(
        session=session,
        principal_id=principal_id,
        request_id=pending.id,
        actor_type="principal",
        actor_id=principal_id,
        event_type="verification.cancelled_by_checkin",
        from_state=LifecycleState.VERIFICATION_PENDING.value,
        to_state=target.value,
        occurred_at=now,
    )


async def record_checkin(
    session: AsyncSession,
    principal_id: str,
    *,
    now: datetime | None = None,
    source: str = "principal",
    principals: PrincipalDirectory | None = None,
    commit: bool = True,
) -> CheckinRecord:
    """Record a check-in and make it the principal's current deadline.

    A pending verification request is resolved as alive in the same
    transaction. Expired requests are left as they are.
    """
    directory = principals or SqlPrincipalDirectory(session)
    profile = await directory.get_principal(principal_id)
    if not profile.checkin_enabled:
        raise NotEnabledError(f"check-ins are disabled for principal {principal_id}")

    now = as_utc(now) if now is not None else utc_now()
    await _cancel_pending_request(session, principal_id, now=now)

    interval_days = max(1, int(profile.checkin_interval_days))
    record = CheckinRecord(
        id=uuid4().hex,
        principal_id=principal_id,
        checked_in_at=now,
        next_check_in=now + timedelta(days=interval_days),
        interval_days=interval_days,
        status=CHECKIN_ALIVE,
        source=source,
    )
    await checkins_repo.append_record(session, record)
    await record_event(
        session=session,
        principal_id=principal_id,
        actor_type="principal" if source == "principal" else source,
        actor_id=principal_id if source == "principal" else None,
        event_type="checkin.recorded",
        to_state=LifecycleState.ALIVE.value,
        metadata={"checkin_id": record.id, "interval_days": interval_days, "source": source},
        occurred_at=now,
    )
    if commit:
        await session.commit()
    logger.info("checkin_recorded principal_id=%s checkin_id=%s source=%s", principal_id, record.id, source)
    return record


async def get_current(session: AsyncSession, principal_id: str) -> CheckinRecord:
    record = await checkins_repo.get_current(session, principal_id)
    if record is None:
        raise NotFoundError(f"no check-in recorded for principal {principal_id}")
    return record


async def list_history(session: AsyncSession, principal_id: str, *, limit: int | None = None) -> list[CheckinRecord]:
    return await checkins_repo.list_history(session, principal_id, limit=limit)
