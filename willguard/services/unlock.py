from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Iterable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from willguard.core.clock import as_utc, utc_now
from willguard.core.config import Settings, get_settings
from willguard.core.errors import (
    AlreadyUnlockedError,
    ConcurrentUpdateError,
    NoUnlockMechanismError,
    NotFoundError,
    PayloadStoreError,
    PolicyNotSatisfiedError,
    WrongCredentialError,
)
from willguard.domain.directory import (
    PartyDirectory,
    PartyProfile,
    PrincipalDirectory,
    UnlockMechanisms,
)
from willguard.domain.models import PayloadRelease, UnlockCredential, VerificationRequest
from willguard.domain.state import UNLOCKABLE_STAGES, LifecycleEvent, LifecycleState, transition
from willguard.persistence.repos import credentials as credentials_repo
from willguard.persistence.repos import verification as verification_repo
from willguard.persistence.repos.directory import SqlPartyDirectory, SqlPrincipalDirectory
from willguard.services.audit import record_event
from willguard.services.notifications import (
    Delivery,
    NotificationChannel,
    party_recipient,
    record_summary,
    send_all,
)
from willguard.services.payloads import PayloadStore
from willguard.services.tokens import verify_pin


logger = logging.getLogger(__name__)

RULE_FULL_PIN = "full_pin"
RULE_EXECUTOR_OVERRIDE = "executor_override"
RULE_TRUSTED_CONTACT_OVERRIDE = "trusted_contact_override"


@dataclass(frozen=True)
class CredentialSubmission:
    person_id: str
    pin: str


@dataclass(frozen=True)
class UnlockResult:
    request_id: str
    principal_id: str
    payload_ref: str
    rule: str
    unlocked_at: datetime


def _check_submissions(
    submissions: Iterable[CredentialSubmission],
    credentials: list[UnlockCredential],
) -> tuple[list[UnlockCredential], list[str]]:
    # Returns matched credentials and the person ids whose submission was rejected.
    by_person = {credential.person_id: credential for credential in credentials}
    matched: dict[str, UnlockCredential] = {}
    rejected: list[str] = []
    for submission in submissions:
        credential = by_person.get(submission.person_id)
        if (
            credential is None
            or credential.used
            or credential.invalidated_at is not None
            or not verify_pin(credential.id, submission.pin, credential.pin_hash)
        ):
            if submission.person_id not in rejected:
                rejected.append(submission.person_id)
            continue
        matched[credential.person_id] = credential
    # A person who also submitted a wrong PIN in the same attempt does not count.
    for person_id in rejected:
        matched.pop(person_id, None)
    return list(matched.values()), rejected


def _check_resubmission(
    submissions: Iterable[CredentialSubmission],
    credentials: list[UnlockCredential],
) -> list[str]:
    # Used credentials still verify: a retry resubmits the PINs the unlock consumed.
    by_person = {credential.person_id: credential for credential in credentials}
    rejected: list[str] = []
    for submission in submissions:
        credential = by_person.get(submission.person_id)
        if (
            credential is None
            or credential.invalidated_at is not None
            or not verify_pin(credential.id, submission.pin, credential.pin_hash)
        ) and submission.person_id not in rejected:
            rejected.append(submission.person_id)
    return rejected


def _override_executor_ids(parties: list[PartyProfile]) -> set[str]:
    primary = {party.id for party in parties if party.is_primary_executor}
    if primary:
        return primary
    return {party.id for party in parties if party.counts_as_executor}


def select_unlock_rule(
    mechanisms: UnlockMechanisms,
    *,
    live_credentials: list[UnlockCredential],
    matched_person_ids: set[str],
    parties: list[PartyProfile],
) -> str | None:
    """Return the first satisfied unlock rule, or ``None``.

    Order: full PIN set, executor override, trusted-contact override.
    """
    if (
        mechanisms.pin_system
        and live_credentials
        and all(credential.person_id in matched_person_ids for credential in live_credentials)
    ):
        return RULE_FULL_PIN
    if mechanisms.executor_override and matched_person_ids & _override_executor_ids(parties):
        return RULE_EXECUTOR_OVERRIDE
    if mechanisms.trusted_contact_override:
        trusted = {party.id for party in parties if party.role == "trusted_contact"}
        if matched_person_ids & trusted:
            return RULE_TRUSTED_CONTACT_OVERRIDE
    return None


async def attempt_unlock(
    session: AsyncSession,
    request_id: str,
    submissions: list[CredentialSubmission],
    *,
    payload_store: PayloadStore,
    now: datetime | None = None,
    principals: PrincipalDirectory | None = None,
    parties: PartyDirectory | None = None,
) -> UnlockResult:
    """Evaluate one unlock attempt and release the payload when a rule holds.

    Wrong or reused credentials reject the whole attempt without touching any
    credential. A successful attempt moves the stage, consumes the submitted
    credentials, calls the payload store once and records the release in a
    single transaction.
    """
    now = as_utc(now) if now is not None else utc_now()
    principals = principals or SqlPrincipalDirectory(session)
    parties = parties or SqlPartyDirectory(session)

    request = await verification_repo.get_request(session, request_id, refresh=True)
    if request is None:
        raise NotFoundError(f"verification request {request_id} not found")
    if request.stage == LifecycleState.UNLOCKED.value:
        # The released reference goes only to callers holding a credential for this request.
        rejected = _check_resubmission(submissions, await credentials_repo.list_for_request(session, request.id))
        if not submissions or rejected:
            await record_event(
                session=session,
                principal_id=request.principal_id,
                request_id=request.id,
                actor_type="party",
                event_type="unlock.rejected",
                outcome="failure",
                metadata={"reason": "wrong_credential_after_unlock", "person_ids": rejected},
                occurred_at=now,
                commit=True,
            )
            raise WrongCredentialError("one or more credentials are invalid", person_ids=rejected)
        raise AlreadyUnlockedError(request.payload_ref)
    source_stage = LifecycleState(request.stage)
    target = transition(source_stage, LifecycleEvent.UNLOCK_SUCCEEDED)
    principal_id = request.principal_id

    profile = await principals.get_principal(principal_id)
    if not profile.unlock.any_unlock_rule():
        raise NoUnlockMechanismError(f"no unlock mechanism enabled for principal {principal_id}")
    if not submissions:
        raise PolicyNotSatisfiedError("no credentials submitted")

    credentials = await credentials_repo.list_for_request(session, request.id)
    matched, rejected = _check_submissions(submissions, credentials)
    if rejected:
        await record_event(
            session=session,
            principal_id=principal_id,
            request_id=request.id,
            actor_type="party",
            event_type="unlock.rejected",
            outcome="failure",
            metadata={"reason": "wrong_credential", "person_ids": rejected},
            occurred_at=now,
            commit=True,
        )
        logger.info("unlock_rejected request_id=%s reason=wrong_credential count=%s", request.id, len(rejected))
        raise WrongCredentialError("one or more credentials are invalid", person_ids=rejected)

    live = [credential for credential in credentials if not credential.used and credential.invalidated_at is None]
    party_list = await parties.list_parties(principal_id)
    matched_ids = {credential.person_id for credential in matched}
    rule = select_unlock_rule(profile.unlock, live_credentials=live, matched_person_ids=matched_ids, parties=party_list)
    if rule is None:
        await record_event(
            session=session,
            principal_id=principal_id,
            request_id=request.id,
            actor_type="party",
            event_type="unlock.rejected",
            outcome="failure",
            metadata={"reason": "policy_not_satisfied", "person_ids": sorted(matched_ids)},
            occurred_at=now,
            commit=True,
        )
        raise PolicyNotSatisfiedError("submitted credentials do not satisfy any enabled unlock rule")

    moved = await verification_repo.compare_and_set_stage(
        session,
        request.id,
        expected=UNLOCKABLE_STAGES,
        target=target,
        values={"unlocked_at": now, "unlock_rule": rule},
    )
    if not moved:
        await session.rollback()
        current = await verification_repo.get_request(session, request.id, refresh=True)
        if current is not None and current.stage == LifecycleState.UNLOCKED.value:
            raise AlreadyUnlockedError(current.payload_ref)
        raise ConcurrentUpdateError(f"verification request {request.id} changed during unlock")

    consumed = await credentials_repo.mark_used(session, [credential.id for credential in matched], now=now)
    if consumed != len(matched):
        await session.rollback()
        raise WrongCredentialError("a submitted credential was used concurrently", person_ids=sorted(matched_ids))

    try:
        payload_ref = await payload_store.release(principal_id, request.id)
    except PayloadStoreError:
        await session.rollback()
        logger.error("unlock_release_failed principal_id=%s request_id=%s", principal_id, request.id)
        raise

    await session.execute(
        update(VerificationRequest)
        .where(VerificationRequest.id == request.id)
        .values(payload_ref=payload_ref)
        .execution_options(synchronize_session=False)
    )
    session.add(
        PayloadRelease(
            request_id=request.id,
            principal_id=principal_id,
            payload_ref=payload_ref,
            unlock_rule=rule,
            released_at=now,
        )
    )
    await record_event(
        session=session,
        principal_id=principal_id,
        request_id=request.id,
        actor_type="party",
        event_type="unlock.succeeded",
        from_state=source_stage.value,
        to_state=target.value,
        metadata={"rule": rule, "person_ids": sorted(matched_ids), "payload_ref": payload_ref},
        occurred_at=now,
    )
    await session.commit()
    logger.info("unlock_succeeded principal_id=%s request_id=%s rule=%s", principal_id, request.id, rule)
    return UnlockResult(
        request_id=request.id,
        principal_id=principal_id,
        payload_ref=payload_ref,
        rule=rule,
        unlocked_at=now,
    )


async def run_failsafe_checks(
    session: AsyncSession,
    *,
    channel: NotificationChannel,
    now: datetime | None = None,
    principals: PrincipalDirectory | None = None,
    parties: PartyDirectory | None = None,
    settings: Settings | None = None,
) -> list[str]:
    """Alert executors and trusted contacts about requests stuck past the failsafe period.

    Notification only: the unlock rules are unchanged and nothing is released.
    """
    now = as_utc(now) if now is not None else utc_now()
    settings = settings or get_settings()
    principals = principals or SqlPrincipalDirectory(session)
    parties = parties or SqlPartyDirectory(session)
    locked_before = now - timedelta(days=settings.failsafe_after_days)

    candidates = await verification_repo.list_failsafe_candidates(session, locked_before=locked_before)
    snapshot = [(request.id, request.principal_id, request.stage) for request in candidates]
    escalated: list[str] = []
    for request_id, principal_id, stage in snapshot:
        try:
            profile = await principals.get_principal(principal_id)
            if not profile.unlock.failsafe:
                continue
            target = transition(stage, LifecycleEvent.FAILSAFE_TRIGGERED)
            moved = await verification_repo.compare_and_set_stage(
                session,
                request_id,
                expected=LifecycleState(stage),
                target=target,
                values={"failsafe_notified_at": now},
            )
            if not moved:
                continue
            reason = (
                f"locked for more than {settings.failsafe_after_days} days after PINs were issued"
                if stage == LifecycleState.PINS_ISSUED.value
                else f"unanswered for more than {settings.failsafe_after_days} days after the window closed"
            )
            await record_event(
                session=session,
                principal_id=principal_id,
                request_id=request_id,
                event_type="failsafe.triggered",
                from_state=stage,
                to_state=target.value,
                metadata={"reason": reason},
                occurred_at=now,
            )
            await session.commit()

            deliveries: list[Delivery] = []
            unreachable: list[str] = []
            for party in await parties.list_parties(principal_id):
                if not (party.counts_as_executor or party.role == "trusted_contact"):
                    continue
                recipient = party_recipient(party)
                if recipient is None:
                    unreachable.append(party.id)
                    continue
                deliveries.append(
                    Delivery(
                        recipient=recipient,
                        template_type="failsafe_alert",
                        context={"principal_name": profile.display_name, "reason": reason, "request_id": request_id},
                    )
                )
            summary = await send_all(channel, deliveries)
            await record_summary(
                session,
                principal_id=principal_id,
                action="failsafe_alert",
                summary=summary,
                occurred_at=now,
                request_id=request_id,
                extra={"unreachable_party_ids": unreachable},
            )
            await session.commit()
        except Exception:  # noqa: BLE001 - one request must not stall the cycle
            await session.rollback()
            logger.exception("failsafe_check_failed request_id=%s", request_id)
            continue
        logger.warning("failsafe_escalated principal_id=%s request_id=%s from=%s", principal_id, request_id, stage)
        escalated.append(request_id)
    return escalated
