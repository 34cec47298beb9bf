from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from willguard.core.errors import InvalidTokenError, NotEnabledError
from willguard.domain.models import UnlockCredential, VerificationRequest, VerificationToken
from willguard.domain.state import LifecycleState
from willguard.persistence.db import SessionLocal
from willguard.persistence.repos import checkins as checkins_repo
from willguard.persistence.repos import verification as verification_repo
from willguard.services.checkins import record_checkin
from willguard.services.verification import (
    expire_due_requests,
    get_lifecycle_state,
    open_verification,
    submit_report,
)
from willguard.tests.utils.fakes import RecordingChannel
from willguard.tests.utils.seed import (
    T0,
    check_in,
    create_household,
    create_party,
    issue_pins,
    open_request,
    overdue_instant,
    set_principal_flags,
)


async def _load_request(request_id: str) -> VerificationRequest:
    async with SessionLocal() as session:
        request = await verification_repo.get_request(session, request_id)
    assert request is not None
    return request


@pytest.mark.asyncio
async def test_request_opens_only_after_grace() -> None:
    household = await create_household()
    await check_in(household.principal_id)
    channel = RecordingChannel()
    boundary = T0 + timedelta(days=21)

    async with SessionLocal() as session:
        assert await open_verification(session, household.principal_id, channel=channel, now=boundary) is None
        request = await open_verification(
            session, household.principal_id, channel=channel, now=boundary + timedelta(seconds=1)
        )

    assert request is not None
    assert request.stage == LifecycleState.VERIFICATION_PENDING.value
    assert request.status == "pending"
    assert request.expires_at == boundary + timedelta(seconds=1, hours=48)
    assert sorted(channel.verification_tokens()) == sorted(household.party_ids)


@pytest.mark.asyncio
async def test_only_token_hashes_are_stored() -> None:
    household = await create_household()
    channel = RecordingChannel()
    request = await open_request(household, channel)
    raw_tokens = set(channel.verification_tokens().values())

    async with SessionLocal() as session:
        result = await session.execute(select(VerificationToken).where(VerificationToken.request_id == request.id))
        stored = {token.token_hash for token in result.scalars().all()}
    assert len(stored) == 3
    assert stored.isdisjoint(raw_tokens)


@pytest.mark.asyncio
async def test_second_open_returns_the_pending_request() -> None:
    household = await create_household()
    channel = RecordingChannel()
    request = await open_request(household, channel)

    async with SessionLocal() as session:
        again = await open_verification(
            session, household.principal_id, channel=channel, now=overdue_instant() + timedelta(hours=1)
        )
        record = await checkins_repo.get_current(session, household.principal_id)
    assert again is not None
    assert again.id == request.id
    assert record.status == "verification_triggered"
    assert len(channel.of_template("verification_request")) == 3


@pytest.mark.asyncio
async def test_database_rejects_a_second_pending_request() -> None:
    household = await create_household()
    request = await open_request(household, RecordingChannel())

    async with SessionLocal() as session:
        session.add(
            VerificationRequest(
                id=uuid4().hex,
                principal_id=household.principal_id,
                status="pending",
                stage=LifecycleState.VERIFICATION_PENDING.value,
                initiated_at=request.initiated_at,
                expires_at=request.expires_at,
            )
        )
        with pytest.raises(IntegrityError):
            await session.commit()


@pytest.mark.asyncio
async def test_disabled_principal_is_not_verified() -> None:
    household = await create_household()
    await check_in(household.principal_id)
    await set_principal_flags(household.principal_id, checkin_enabled=False)

    async with SessionLocal() as session:
        with pytest.raises(NotEnabledError):
            await open_verification(session, household.principal_id, channel=RecordingChannel(), now=overdue_instant())


@pytest.mark.asyncio
async def test_alive_report_resolves_and_restarts_the_cycle() -> None:
    household = await create_household()
    channel = RecordingChannel()
    request = await open_request(household, channel)
    token = channel.verification_tokens()[household.beneficiary_id]
    reported_at = overdue_instant() + timedelta(hours=3)

    async with SessionLocal() as session:
        resolved = await submit_report(session, token, "alive", channel=channel, now=reported_at)
        current = await checkins_repo.get_current(session, household.principal_id)
        snapshot = await get_lifecycle_state(session, household.principal_id, now=reported_at)

    assert resolved.id == request.id
    assert resolved.stage == LifecycleState.RESOLVED_ALIVE.value
    assert resolved.result == "confirmed_alive"
    assert resolved.resolved_by_party_id == household.beneficiary_id
    assert current.source == "party_report"
    assert current.status == "alive"
    assert snapshot.state is LifecycleState.ALIVE
    assert channel.of_template("unlock_pin") == []


@pytest.mark.asyncio
async def test_deceased_report_issues_one_pin_per_party() -> None:
    household = await create_household()
    channel = RecordingChannel()
    request_id, pins, _reported_at = await issue_pins(household, channel)

    request = await _load_request(request_id)
    assert request.stage == LifecycleState.PINS_ISSUED.value
    assert request.result == "confirmed_deceased"
    assert request.pins_issued_at is not None
    assert sorted(pins) == sorted(household.party_ids)
    assert all(len(pin) == 10 and pin.isdigit() for pin in pins.values())

    async with SessionLocal() as session:
        result = await session.execute(select(UnlockCredential).where(UnlockCredential.request_id == request_id))
        credentials = list(result.scalars().all())
    assert len(credentials) == 3
    assert not any(credential.used for credential in credentials)
    assert {credential.pin_hash for credential in credentials}.isdisjoint(pins.values())


@pytest.mark.asyncio
async def test_first_report_wins() -> None:
    household = await create_household()
    channel = RecordingChannel()
    request_id, _pins, reported_at = await issue_pins(household, channel)
    late_token = channel.verification_tokens()[household.trusted_id]

    async with SessionLocal() as session:
        with pytest.raises(InvalidTokenError):
            await submit_report(session, late_token, "alive", channel=channel, now=reported_at + timedelta(minutes=1))

    request = await _load_request(request_id)
    assert request.stage == LifecycleState.PINS_ISSUED.value
    assert len(channel.of_template("unlock_pin")) == 3


@pytest.mark.asyncio
async def test_unknown_token_is_rejected() -> None:
    household = await create_household()
    await open_request(household, RecordingChannel())
    async with SessionLocal() as session:
        with pytest.raises(InvalidTokenError):
            await submit_report(session, "not-a-real-token", "deceased", channel=RecordingChannel(), now=overdue_instant())


@pytest.mark.asyncio
async def test_checkin_during_pending_cancels_the_request() -> None:
    household = await create_household()
    channel = RecordingChannel()
    request = await open_request(household, channel)
    checked_in_at = overdue_instant() + timedelta(hours=1)

    async with SessionLocal() as session:
        await record_checkin(session, household.principal_id, now=checked_in_at)
    resolved = await _load_request(request.id)
    assert resolved.stage == LifecycleState.RESOLVED_ALIVE.value
    assert resolved.status == "completed"

    token = channel.verification_tokens()[household.executor_id]
    async with SessionLocal() as session:
        with pytest.raises(InvalidTokenError):
            await submit_report(session, token, "deceased", channel=channel, now=checked_in_at + timedelta(minutes=1))


@pytest.mark.asyncio
async def test_expiry_never_confirms_death() -> None:
    household = await create_household()
    channel = RecordingChannel()
    request = await open_request(household, channel)
    after_window = overdue_instant() + timedelta(hours=48)

    async with SessionLocal() as session:
        expired = await expire_due_requests(session, now=after_window)
        snapshot = await get_lifecycle_state(session, household.principal_id, now=after_window)
        reopened = await open_verification(
            session, household.principal_id, channel=channel, now=after_window + timedelta(hours=1)
        )
    assert expired == [request.id]
    assert snapshot.state is LifecycleState.EXPIRED_UNRESOLVED
    assert reopened is None

    stored = await _load_request(request.id)
    assert stored.status == "expired"
    assert stored.pins_issued_at is None
    assert channel.of_template("unlock_pin") == []


@pytest.mark.asyncio
async def test_report_after_window_is_rejected_before_the_sweep() -> None:
    household = await create_household()
    channel = RecordingChannel()
    await open_request(household, channel)
    token = channel.verification_tokens()[household.executor_id]

    async with SessionLocal() as session:
        with pytest.raises(InvalidTokenError):
            await submit_report(session, token, "deceased", channel=channel, now=overdue_instant() + timedelta(hours=48))


@pytest.mark.asyncio
async def test_checkin_after_expiry_starts_a_new_cycle() -> None:
    household = await create_household()
    channel = RecordingChannel()
    await open_request(household, channel)
    after_window = overdue_instant() + timedelta(hours=49)
    async with SessionLocal() as session:
        await expire_due_requests(session, now=after_window)
        await record_checkin(session, household.principal_id, now=after_window)
        snapshot = await get_lifecycle_state(session, household.principal_id, now=after_window)
    assert snapshot.state is LifecycleState.ALIVE

    next_overdue = overdue_instant(start=after_window)
    async with SessionLocal() as session:
        second = await open_verification(session, household.principal_id, channel=channel, now=next_overdue)
    assert second is not None
    assert second.stage == LifecycleState.VERIFICATION_PENDING.value


@pytest.mark.asyncio
async def test_party_without_email_still_gets_a_credential() -> None:
    household = await create_household()
    silent_id = await create_party(household.principal_id, role="beneficiary", email="")
    channel = RecordingChannel()
    request_id, pins, _reported_at = await issue_pins(household, channel)

    assert silent_id not in pins
    async with SessionLocal() as session:
        result = await session.execute(select(UnlockCredential).where(UnlockCredential.request_id == request_id))
        person_ids = {credential.person_id for credential in result.scalars().all()}
    assert silent_id in person_ids
