from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from willguard.core.clock import as_utc, utc_now
from willguard.core.errors import ConcurrentUpdateError, IllegalTransitionError, NotFoundError
from willguard.domain.directory import PartyDirectory, PrincipalDirectory
from willguard.domain.models import VerificationRequest
from willguard.domain.state import LifecycleEvent, LifecycleState, can_transition, transition
from willguard.persistence.repos import checkins as checkins_repo
from willguard.persistence.repos import credentials as credentials_repo
from willguard.persistence.repos import verification as verification_repo
from willguard.persistence.repos.directory import SqlPrincipalDirectory
from willguard.services.audit import record_event
from willguard.services.notifications import NotificationChannel
from willguard.services.verification import issue_credentials


logger = logging.getLogger(__name__)


@dataclass
class ResetResult:
    principal_id: str
    deleted_checkins: int = 0
    cancelled_request_ids: list[str] = field(default_factory=list)


async def confirm_deceased(
    session: AsyncSession,
    request_id: str,
    *,
    channel: NotificationChannel,
    actor_id: str | None = None,
    now: datetime | None = None,
    principals: PrincipalDirectory | None = None,
    parties: PartyDirectory | None = None,
) -> VerificationRequest:
    """Resolve an unanswered request as deceased and issue credentials."""
    now = as_utc(now) if now is not None else utc_now()
    request = await verification_repo.get_request(session, request_id, refresh=True)
    if request is None:
        raise NotFoundError(f"verification request {request_id} not found")
    source_stage = LifecycleState(request.stage)
    # Requests that already carry credentials are never credentialed twice.
    if request.pins_issued_at is not None:
        raise IllegalTransitionError(source_stage.value, LifecycleEvent.ADMIN_CONFIRMED_DECEASED.value)
    target = transition(source_stage, LifecycleEvent.ADMIN_CONFIRMED_DECEASED)
    values: dict[str, object] = {"status": "completed", "result": "confirmed_deceased", "resolved_at": now}
    if source_stage is LifecycleState.RESOLVED_DECEASED:
        # Already resolved by a party report; only the credential issue is retried.
        values = {}
    moved = await verification_repo.compare_and_set_stage(
        session,
        request.id,
        expected=source_stage,
        target=target,
        values=values,
    )
    if not moved:
        await session.rollback()
        raise ConcurrentUpdateError(f"verification request {request_id} changed during confirmation")
    await record_event(
        session=session,
        principal_id=request.principal_id,
        request_id=request.id,
        actor_type="admin",
        actor_id=actor_id,
        event_type="verification.admin_confirmed_deceased",
        from_state=source_stage.value,
        to_state=target.value,
        occurred_at=now,
    )
    await session.commit()
    logger.warning("admin_confirmed_deceased principal_id=%s request_id=%s", request.principal_id, request.id)
    await issue_credentials(
        session,
        request.id,
        channel=channel,
        now=now,
        principals=principals,
        parties=parties,
    )
    refreshed = await verification_repo.get_request(session, request.id, refresh=True)
    return refreshed if refreshed is not None else request


async def reset_principal(
    session: AsyncSession,
    principal_id: str,
    *,
    actor_id: str | None = None,
    now: datetime | None = None,
    principals: PrincipalDirectory | None = None,
) -> ResetResult:
    """Clear check-in history and cancel every open, not yet unlocked request."""
    now = as_utc(now) if now is not None else utc_now()
    principals = principals or SqlPrincipalDirectory(session)
    await principals.get_principal(principal_id)

    result = ResetResult(principal_id=principal_id)
    for request in await verification_repo.list_open_for_principal(session, principal_id):
        source_stage = LifecycleState(request.stage)
        if not can_transition(source_stage, LifecycleEvent.ADMIN_RESET):
            continue
        target = transition(source_stage, LifecycleEvent.ADMIN_RESET)
        values: dict[str, object] = {"resolved_at": now}
        if request.status == "pending":
            # Frees the one-pending-request slot for the principal.
            values["status"] = "completed"
        moved = await verification_repo.compare_and_set_stage(
            session,
            request.id,
            expected=source_stage,
            target=target,
            values=values,
        )
        if not moved:
            await session.rollback()
            raise ConcurrentUpdateError(f"verification request {request.id} changed during reset")
        await credentials_repo.invalidate_for_request(session, request.id, now=now)
        result.cancelled_request_ids.append(request.id)
        await record_event(
            session=session,
            principal_id=principal_id,
            request_id=request.id,
            actor_type="admin",
            actor_id=actor_id,
            event_type="verification.cancelled_by_reset",
            from_state=source_stage.value,
            to_state=target.value,
            occurred_at=now,
        )

    result.deleted_checkins = await checkins_repo.delete_history(session, principal_id)
    await record_event(
        session=session,
        principal_id=principal_id,
        actor_type="admin",
        actor_id=actor_id,
        event_type="principal.reset",
        metadata={
            "deleted_checkins": result.deleted_checkins,
            "cancelled_requests": len(result.cancelled_request_ids),
        },
        occurred_at=now,
    )
    await session.commit()
    logger.warning(
        "principal_reset principal_id=%s deleted_checkins=%s cancelled=%s",
        principal_id,
        result.deleted_checkins,
        len(result.cancelled_request_ids),
    )
    return result
