from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from willguard.core.clock import as_utc, utc_now
from willguard.core.config import Settings, get_settings
from willguard.core.errors import NotFoundError
from willguard.domain.directory import PartyDirectory, PrincipalDirectory, PrincipalProfile
from willguard.domain.state import DECEASED_STAGES, LifecycleState
from willguard.persistence.repos import checkins as checkins_repo
from willguard.persistence.repos import dispatch as dispatch_repo
from willguard.persistence.repos import verification as verification_repo
from willguard.persistence.repos.directory import SqlPartyDirectory, SqlPrincipalDirectory
from willguard.services.notifications import (
    Delivery,
    NotificationChannel,
    party_recipient,
    principal_recipients,
    record_summary,
    send_all,
)


logger = logging.getLogger(__name__)

ESCALATION_ACTION = "escalation_sent"

URGENCY_MILD = "mild"
URGENCY_MODERATE = "moderate"
URGENCY_SEVERE = "severe"


@dataclass(frozen=True)
class EscalationOutcome:
    principal_id: str
    # sent, skipped_dedup, skipped_deceased, skipped_disabled, skipped_no_recipients, failed.
    action: str
    days_overdue: int
    urgency: str | None = None
    sent_count: int = 0
    failed_count: int = 0
    parties_alerted: bool = False


def days_overdue(next_check_in: datetime, now: datetime) -> int:
    # Whole days past the deadline, floored; never negative.
    delta = as_utc(now) - as_utc(next_check_in)
    if delta.total_seconds() <= 0:
        return 0
    return int(delta // timedelta(days=1))


def classify_urgency(days: int, *, settings: Settings | None = None) -> str:
    # Tone only: the tier changes wording, never who is contacted.
    settings = settings or get_settings()
    if days <= settings.escalation_mild_max_days:
        return URGENCY_MILD
    if days <= settings.escalation_moderate_max_days:
        return URGENCY_MODERATE
    return URGENCY_SEVERE


async def is_within_dedup_window(
    session: AsyncSession,
    *,
    principal_id: str,
    now: datetime,
    settings: Settings | None = None,
) -> bool:
    settings = settings or get_settings()
    cursor = await dispatch_repo.get_cursor(session, principal_id=principal_id, action=ESCALATION_ACTION)
    if cursor is None:
        return False
    window = timedelta(hours=settings.escalation_dedup_window_hours)
    return as_utc(now) - as_utc(cursor.last_sent_at) < window


async def _is_presumed_deceased(session: AsyncSession, principal_id: str) -> bool:
    latest = await verification_repo.get_latest_for_principal(session, principal_id)
    if latest is None or latest.stage == LifecycleState.CANCELLED.value:
        return False
    return latest.pins_issued_at is not None or LifecycleState(latest.stage) in DECEASED_STAGES


async def _escalate_principal(
    session: AsyncSession,
    *,
    next_check_in: datetime,
    profile: PrincipalProfile,
    now: datetime,
    force: bool,
    channel: NotificationChannel,
    parties: PartyDirectory,
    settings: Settings,
) -> EscalationOutcome:
    days = days_overdue(next_check_in, now)
    if await _is_presumed_deceased(session, profile.id):
        return EscalationOutcome(principal_id=profile.id, action="skipped_deceased", days_overdue=days)
    if not force and await is_within_dedup_window(session, principal_id=profile.id, now=now, settings=settings):
        return EscalationOutcome(principal_id=profile.id, action="skipped_dedup", days_overdue=days)

    urgency = classify_urgency(days, settings=settings)
    context = {
        "principal_name": profile.display_name,
        "days_overdue": days,
        "urgency": urgency,
        "next_check_in": as_utc(next_check_in).isoformat(),
    }
    deliveries = [
        Delivery(recipient=recipient, template_type="checkin_reminder", context=context)
        for recipient in principal_recipients(profile)
    ]
    unreachable: list[str] = []
    alert_parties = days > profile.grace_period_days
    if alert_parties:
        for party in await parties.list_parties(profile.id):
            recipient = party_recipient(party)
            if recipient is None:
                unreachable.append(party.id)
                continue
            deliveries.append(Delivery(recipient=recipient, template_type="missed_checkin_alert", context=context))

    if not deliveries:
        logger.info("escalation_no_recipients principal_id=%s days_overdue=%s", profile.id, days)
        return EscalationOutcome(
            principal_id=profile.id, action="skipped_no_recipients", days_overdue=days, urgency=urgency
        )

    # Every send completes before the log entry and cursor are written.
    summary = await send_all(channel, deliveries)
    await record_summary(
        session,
        principal_id=profile.id,
        action=ESCALATION_ACTION,
        summary=summary,
        occurred_at=now,
        urgency=urgency,
        extra={
            "days_overdue": days,
            "parties_alerted": alert_parties,
            "forced": force,
            "unreachable_party_ids": unreachable,
        },
    )
    await session.commit()
    logger.info(
        "escalation_dispatched principal_id=%s urgency=%s days_overdue=%s sent=%s failed=%s",
        profile.id,
        urgency,
        days,
        summary.sent_count,
        summary.failed_count,
    )
    return EscalationOutcome(
        principal_id=profile.id,
        action="sent",
        days_overdue=days,
        urgency=urgency,
        sent_count=summary.sent_count,
        failed_count=summary.failed_count,
        parties_alerted=alert_parties,
    )


async def run_escalation(
    session: AsyncSession,
    *,
    channel: NotificationChannel,
    now: datetime | None = None,
    force: bool = False,
    principals: PrincipalDirectory | None = None,
    parties: PartyDirectory | None = None,
    settings: Settings | None = None,
) -> list[EscalationOutcome]:
    """Send overdue reminders and party alerts for one scheduler cycle.

    Safe to re-run: the per-principal cursor suppresses repeats inside the
    dedup window unless ``force`` is set. A failure for one principal is
    logged and the cycle moves on.
    """
    now = as_utc(now) if now is not None else utc_now()
    settings = settings or get_settings()
    principals = principals or SqlPrincipalDirectory(session)
    parties = parties or SqlPartyDirectory(session)

    # Snapshot plain values: a rollback for one principal expires loaded rows.
    records = await checkins_repo.list_past_deadline(session, now=now)
    due = [(record.principal_id, record.next_check_in) for record in records]
    outcomes: list[EscalationOutcome] = []
    for principal_id, next_check_in in due:
        try:
            profile = await principals.get_principal(principal_id)
        except NotFoundError:
            logger.warning("escalation_principal_missing principal_id=%s", principal_id)
            continue
        if not profile.checkin_enabled:
            outcomes.append(
                EscalationOutcome(
                    principal_id=profile.id,
                    action="skipped_disabled",
                    days_overdue=days_overdue(next_check_in, now),
                )
            )
            continue
        try:
            outcome = await _escalate_principal(
                session,
                next_check_in=next_check_in,
                profile=profile,
                now=now,
                force=force,
                channel=channel,
                parties=parties,
                settings=settings,
            )
        except Exception:  # noqa: BLE001 - one principal must not stall the cycle
            await session.rollback()
            logger.exception("escalation_failed principal_id=%s", principal_id)
            outcome = EscalationOutcome(
                principal_id=principal_id,
                action="failed",
                days_overdue=days_overdue(next_check_in, now),
            )
        outcomes.append(outcome)
    return outcomes
