from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from urllib.parse import urlencode
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from willguard.core.clock import as_utc, utc_now
from willguard.core.config import Settings, get_settings
from willguard.core.errors import (
    ConcurrentUpdateError,
    InvalidTokenError,
    NotEnabledError,
    NotFoundError,
)
from willguard.domain.directory import PartyDirectory, PrincipalDirectory
from willguard.domain.models import UnlockCredential, VerificationRequest
from willguard.domain.state import LifecycleEvent, LifecycleState, transition
from willguard.persistence.repos import checkins as checkins_repo
from willguard.persistence.repos import verification as verification_repo
from willguard.persistence.repos.directory import SqlPartyDirectory, SqlPrincipalDirectory
from willguard.services.audit import record_event
from willguard.services.checkins import (
    CHECKIN_ALIVE,
    CHECKIN_VERIFICATION_TRIGGERED,
    is_overdue,
    record_checkin,
)
from willguard.services.escalation import days_overdue
from willguard.services.notifications import (
    Delivery,
    NotificationChannel,
    party_recipient,
    record_summary,
    send_all,
)
from willguard.services.tokens import generate_pin, generate_verification_token, hash_pin, hash_token


logger = logging.getLogger(__name__)

REPORT_ALIVE = "alive"
REPORT_DECEASED = "deceased"


@dataclass(frozen=True)
class LifecycleSnapshot:
    principal_id: str
    state: LifecycleState
    checkin_id: str | None = None
    next_check_in: datetime | None = None
    days_overdue: int = 0
    request_id: str | None = None
    request_expires_at: datetime | None = None


def _verification_link(token: str, settings: Settings) -> str:
    return f"{settings.verification_link_base_url}?{urlencode({'token': token})}"


async def open_verification(
    session: AsyncSession,
    principal_id: str,
    *,
    channel: NotificationChannel,
    now: datetime | None = None,
    principals: PrincipalDirectory | None = None,
    parties: PartyDirectory | None = None,
    settings: Settings | None = None,
) -> VerificationRequest | None:
    """Open the verification request for a principal past deadline and grace.

    Returns the new request, the already pending one, or ``None`` when the
    principal is not eligible (not overdue, already triggered, or disabled).
    """
    now = as_utc(now) if now is not None else utc_now()
    settings = settings or get_settings()
    principals = principals or SqlPrincipalDirectory(session)
    parties = parties or SqlPartyDirectory(session)

    profile = await principals.get_principal(principal_id)
    if not profile.checkin_enabled:
        raise NotEnabledError(f"check-ins are disabled for principal {principal_id}")
    existing = await verification_repo.get_pending_for_principal(session, principal_id)
    if existing is not None:
        return existing
    record = await checkins_repo.get_current(session, principal_id)
    if record is None or record.status != CHECKIN_ALIVE:
        return None
    if not is_overdue(record, profile.grace_period_days, now):
        return None

    # alive -> overdue_unconfirmed -> verification_pending, validated step by step.
    overdue = transition(LifecycleState.ALIVE, LifecycleEvent.GRACE_ELAPSED)
    stage = transition(overdue, LifecycleEvent.REQUEST_OPENED)
    checkin_id = record.id
    request = VerificationRequest(
        id=uuid4().hex,
        principal_id=principal_id,
        checkin_id=checkin_id,
        status="pending",
        stage=stage.value,
        initiated_at=now,
        expires_at=now + timedelta(hours=max(1, int(profile.verification_window_hours))),
    )
    session.add(request)
    try:
        await session.flush()
    except IntegrityError:
        # The partial unique index rejected a second pending request.
        await session.rollback()
        logger.info("verification_open_conflict principal_id=%s", principal_id)
        return await verification_repo.get_pending_for_principal(session, principal_id)

    record.status = CHECKIN_VERIFICATION_TRIGGERED
    deliveries: list[Delivery] = []
    unreachable: list[str] = []
    party_list = await parties.list_parties(principal_id)
    for party in party_list:
        raw_token, token_hash = generate_verification_token()
        await verification_repo.add_token(session, token_hash=token_hash, request_id=request.id, party_id=party.id)
        recipient = party_recipient(party)
        if recipient is None:
            unreachable.append(party.id)
            continue
        deliveries.append(
            Delivery(
                recipient=recipient,
                template_type="verification_request",
                context={
                    "principal_name": profile.display_name,
                    "verification_link": _verification_link(raw_token, settings),
                    "expires_at": request.expires_at.isoformat(),
                },
            )
        )
    await record_event(
        session=session,
        principal_id=principal_id,
        request_id=request.id,
        event_type="verification.opened",
        from_state=overdue.value,
        to_state=stage.value,
        metadata={"checkin_id": checkin_id, "party_count": len(party_list)},
        occurred_at=now,
    )
    # Tokens must be durable before any link leaves the system.
    await session.commit()

    summary = await send_all(channel, deliveries)
    await record_summary(
        session,
        principal_id=principal_id,
        action="verification_request",
        summary=summary,
        occurred_at=now,
        request_id=request.id,
        extra={"unreachable_party_ids": unreachable},
    )
    await session.commit()
    logger.info(
        "verification_opened principal_id=%s request_id=%s parties=%s sent=%s",
        principal_id,
        request.id,
        len(party_list),
        summary.sent_count,
    )
    return request


async def open_due_verifications(
    session: AsyncSession,
    *,
    channel: NotificationChannel,
    now: datetime | None = None,
    principals: PrincipalDirectory | None = None,
    parties: PartyDirectory | None = None,
    settings: Settings | None = None,
) -> list[str]:
    now = as_utc(now) if now is not None else utc_now()
    principals = principals or SqlPrincipalDirectory(session)
    records = await checkins_repo.list_past_deadline(session, now=now)
    candidates = [record.principal_id for record in records if record.status == CHECKIN_ALIVE]
    opened: list[str] = []
    for principal_id in candidates:
        try:
            profile = await principals.get_principal(principal_id)
            if not profile.checkin_enabled:
                continue
            request = await open_verification(
                session,
                principal_id,
                channel=channel,
                now=now,
                principals=principals,
                parties=parties,
                settings=settings,
            )
        except Exception:  # noqa: BLE001 - one principal must not stall the cycle
            await session.rollback()
            logger.exception("verification_open_failed principal_id=%s", principal_id)
            continue
        if request is not None:
            opened.append(request.id)
    return opened


async def _load_actionable_request(session: AsyncSession, raw_token: str, now: datetime) -> tuple[VerificationRequest, str]:
    token = await verification_repo.get_token(session, hash_token(raw_token))
    if token is None:
        raise InvalidTokenError("verification token is not valid")
    request = await verification_repo.get_request(session, token.request_id, refresh=True)
    if request is None:
        raise InvalidTokenError("verification token is not valid")
    if request.status != "pending" or request.stage != LifecycleState.VERIFICATION_PENDING.value:
        raise InvalidTokenError("verification request is no longer pending")
    if now >= as_utc(request.expires_at):
        raise InvalidTokenError("verification request has expired")
    return request, token.party_id


async def submit_report(
    session: AsyncSession,
    raw_token: str,
    report: str,
    *,
    channel: NotificationChannel,
    now: datetime | None = None,
    principals: PrincipalDirectory | None = None,
    parties: PartyDirectory | None = None,
    settings: Settings | None = None,
) -> VerificationRequest:
    """Apply a party's alive/deceased report; the first report wins."""
    if report not in {REPORT_ALIVE, REPORT_DECEASED}:
        raise ValueError(f"Unsupported report: {report}")
    now = as_utc(now) if now is not None else utc_now()
    principals = principals or SqlPrincipalDirectory(session)
    parties = parties or SqlPartyDirectory(session)

    request, party_id = await _load_actionable_request(session, raw_token, now)
    event = LifecycleEvent.ALIVE_REPORTED if report == REPORT_ALIVE else LifecycleEvent.DECEASED_REPORTED
    target = transition(request.stage, event)
    result = "confirmed_alive" if report == REPORT_ALIVE else "confirmed_deceased"
    moved = await verification_repo.compare_and_set_stage(
        session,
        request.id,
        expected=LifecycleState.VERIFICATION_PENDING,
        target=target,
        values={
            "status": "completed",
            "result": result,
            "resolved_at": now,
            "resolved_by_party_id": party_id,
        },
    )
    if not moved:
        await session.rollback()
        raise InvalidTokenError("verification request is no longer pending")

    await verification_repo.add_response(
        session,
        response_id=uuid4().hex,
        request_id=request.id,
        party_id=party_id,
        report=report,
        created_at=now,
    )
    await record_event(
        session=session,
        principal_id=request.principal_id,
        request_id=request.id,
        actor_type="party",
        actor_id=party_id,
        event_type=f"verification.reported_{report}",
        from_state=LifecycleState.VERIFICATION_PENDING.value,
        to_state=target.value,
        occurred_at=now,
    )
    if report == REPORT_ALIVE:
        try:
            await record_checkin(
                session,
                request.principal_id,
                now=now,
                source="party_report",
                principals=principals,
                commit=False,
            )
        except NotEnabledError:
            logger.warning("alive_report_checkin_skipped principal_id=%s", request.principal_id)
    await session.commit()
    logger.info(
        "verification_reported principal_id=%s request_id=%s report=%s party_id=%s",
        request.principal_id,
        request.id,
        report,
        party_id,
    )

    if report == REPORT_DECEASED:
        # The report stands on its own; the scheduler retries a failed issue.
        try:
            await issue_credentials(
                session,
                request.id,
                channel=channel,
                now=now,
                principals=principals,
                parties=parties,
                settings=settings,
            )
        except Exception:  # noqa: BLE001 - credentials are re-issued by the next cycle
            await session.rollback()
            logger.exception(
                "credential_issue_deferred principal_id=%s request_id=%s", request.principal_id, request.id
            )
    refreshed = await verification_repo.get_request(session, request.id, refresh=True)
    return refreshed if refreshed is not None else request


async def issue_credentials(
    session: AsyncSession,
    request_id: str,
    *,
    channel: NotificationChannel,
    now: datetime | None = None,
    principals: PrincipalDirectory | None = None,
    parties: PartyDirectory | None = None,
    settings: Settings | None = None,
) -> list[UnlockCredential]:
    """Issue one single-use PIN per party and deliver it once.

    Only the salted hash is stored; the plaintext exists just long enough to
    be handed to the notification channel.
    """
    now = as_utc(now) if now is not None else utc_now()
    settings = settings or get_settings()
    principals = principals or SqlPrincipalDirectory(session)
    parties = parties or SqlPartyDirectory(session)

    request = await verification_repo.get_request(session, request_id, refresh=True)
    if request is None:
        raise NotFoundError(f"verification request {request_id} not found")
    target = transition(request.stage, LifecycleEvent.CREDENTIALS_ISSUED)
    profile = await principals.get_principal(request.principal_id)

    issued: list[tuple[UnlockCredential, str]] = []
    party_list = await parties.list_parties(request.principal_id)
    for party in party_list:
        credential_id = uuid4().hex
        pin = generate_pin(settings.unlock_pin_length)
        credential = UnlockCredential(
            id=credential_id,
            request_id=request.id,
            principal_id=request.principal_id,
            person_id=party.id,
            person_type=party.role,
            pin_hash=hash_pin(credential_id, pin),
            used=False,
        )
        session.add(credential)
        issued.append((credential, pin))

    moved = await verification_repo.compare_and_set_stage(
        session,
        request.id,
        expected=LifecycleState.RESOLVED_DECEASED,
        target=target,
        values={"pins_issued_at": now},
    )
    if not moved:
        await session.rollback()
        raise ConcurrentUpdateError(f"credentials already issued for request {request_id}")
    await record_event(
        session=session,
        principal_id=request.principal_id,
        request_id=request.id,
        event_type="verification.credentials_issued",
        from_state=LifecycleState.RESOLVED_DECEASED.value,
        to_state=target.value,
        metadata={"credential_count": len(issued)},
        occurred_at=now,
    )
    await session.commit()

    parties_by_id = {party.id: party for party in party_list}
    deliveries: list[Delivery] = []
    unreachable: list[str] = []
    for credential, pin in issued:
        recipient = party_recipient(parties_by_id[credential.person_id])
        if recipient is None:
            unreachable.append(credential.person_id)
            continue
        deliveries.append(
            Delivery(
                recipient=recipient,
                template_type="unlock_pin",
                context={"principal_name": profile.display_name, "pin": pin, "request_id": request.id},
            )
        )
    summary = await send_all(channel, deliveries)
    await record_summary(
        session,
        principal_id=request.principal_id,
        action="unlock_pin",
        summary=summary,
        occurred_at=now,
        request_id=request.id,
        extra={"unreachable_party_ids": unreachable},
    )
    await session.commit()
    logger.info(
        "credentials_issued principal_id=%s request_id=%s count=%s sent=%s",
        request.principal_id,
        request.id,
        len(issued),
        summary.sent_count,
    )
    return [credential for credential, _pin in issued]


async def issue_missing_credentials(
    session: AsyncSession,
    *,
    channel: NotificationChannel,
    now: datetime | None = None,
    principals: PrincipalDirectory | None = None,
    parties: PartyDirectory | None = None,
    settings: Settings | None = None,
) -> list[str]:
    """Issue credentials for deceased reports whose issue step never committed."""
    now = as_utc(now) if now is not None else utc_now()
    requests = await verification_repo.list_awaiting_credentials(session)
    stalled = [(request.id, request.principal_id) for request in requests]
    issued: list[str] = []
    for request_id, principal_id in stalled:
        try:
            await issue_credentials(
                session,
                request_id,
                channel=channel,
                now=now,
                principals=principals,
                parties=parties,
                settings=settings,
            )
        except ConcurrentUpdateError:
            logger.info("credential_reissue_lost principal_id=%s request_id=%s", principal_id, request_id)
            continue
        except Exception:  # noqa: BLE001 - one request must not stall the cycle
            await session.rollback()
            logger.exception("credential_reissue_failed principal_id=%s request_id=%s", principal_id, request_id)
            continue
        logger.warning("credentials_reissued principal_id=%s request_id=%s", principal_id, request_id)
        issued.append(request_id)
    return issued


async def expire_due_requests(session: AsyncSession, *, now: datetime | None = None) -> list[str]:
    """Move pending requests past their window to expired_unresolved.

    Expiry never confirms death; it only records that nobody answered.
    """
    now = as_utc(now) if now is not None else utc_now()
    requests = await verification_repo.list_due_for_expiry(session, now=now)
    due = [(request.id, request.principal_id, request.stage) for request in requests]
    expired: list[str] = []
    for request_id, principal_id, stage in due:
        target = transition(stage, LifecycleEvent.WINDOW_EXPIRED)
        moved = await verification_repo.compare_and_set_stage(
            session,
            request_id,
            expected=LifecycleState.VERIFICATION_PENDING,
            target=target,
            values={"status": "expired"},
        )
        if not moved:
            continue
        await record_event(
            session=session,
            principal_id=principal_id,
            request_id=request_id,
            event_type="verification.expired",
            from_state=LifecycleState.VERIFICATION_PENDING.value,
            to_state=target.value,
            outcome="expired",
            occurred_at=now,
        )
        await session.commit()
        logger.info("verification_expired principal_id=%s request_id=%s", principal_id, request_id)
        expired.append(request_id)
    return expired


async def get_lifecycle_state(
    session: AsyncSession,
    principal_id: str,
    *,
    now: datetime | None = None,
    principals: PrincipalDirectory | None = None,
) -> LifecycleSnapshot:
    now = as_utc(now) if now is not None else utc_now()
    principals = principals or SqlPrincipalDirectory(session)
    profile = await principals.get_principal(principal_id)
    record = await checkins_repo.get_current(session, principal_id)
    request = await verification_repo.get_latest_for_principal(session, principal_id)

    if request is not None:
        stage = LifecycleState(request.stage)
        # A check-in after an uncredentialed, unanswered request starts a new cycle.
        superseded = (
            stage in {LifecycleState.EXPIRED_UNRESOLVED, LifecycleState.FAILSAFE_ESCALATED}
            and request.pins_issued_at is None
            and record is not None
            and as_utc(record.checked_in_at) > as_utc(request.initiated_at)
        )
        if stage not in {LifecycleState.RESOLVED_ALIVE, LifecycleState.CANCELLED} and not superseded:
            return LifecycleSnapshot(
                principal_id=principal_id,
                state=stage,
                checkin_id=record.id if record is not None else None,
                next_check_in=as_utc(record.next_check_in) if record is not None else None,
                days_overdue=days_overdue(record.next_check_in, now) if record is not None else 0,
                request_id=request.id,
                request_expires_at=as_utc(request.expires_at),
            )

    if record is None:
        return LifecycleSnapshot(principal_id=principal_id, state=LifecycleState.ALIVE)
    state = LifecycleState.ALIVE
    if profile.checkin_enabled and is_overdue(record, profile.grace_period_days, now):
        state = transition(state, LifecycleEvent.GRACE_ELAPSED)
    return LifecycleSnapshot(
        principal_id=principal_id,
        state=state,
        checkin_id=record.id,
        next_check_in=as_utc(record.next_check_in),
        days_overdue=days_overdue(record.next_check_in, now),
    )
