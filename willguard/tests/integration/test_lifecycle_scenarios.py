from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from willguard.core.errors import PolicyNotSatisfiedError, WrongCredentialError
from willguard.domain.models import UnlockCredential
from willguard.domain.state import LifecycleState
from willguard.persistence.db import SessionLocal
from willguard.persistence.repos import verification as verification_repo
from willguard.services.checkins import record_checkin
from willguard.services.scheduler import run_scheduler_cycle
from willguard.services.unlock import RULE_EXECUTOR_OVERRIDE, CredentialSubmission, attempt_unlock
from willguard.services.verification import get_lifecycle_state, submit_report
from willguard.tests.utils.fakes import FakePayloadStore, RecordingChannel
from willguard.tests.utils.seed import T0, create_party, create_principal


@pytest.mark.asyncio
async def test_weekly_principal_is_verified_three_days_after_deadline() -> None:
    principal_id = await create_principal(interval_days=7, grace_days=2, window_hours=72)
    await create_party(principal_id, role="executor")
    async with SessionLocal() as session:
        record = await record_checkin(session, principal_id, now=T0)
    assert record.next_check_in == T0 + timedelta(days=7)

    scan_at = T0 + timedelta(days=10)
    report = await run_scheduler_cycle(now=scan_at, channel=RecordingChannel())
    assert report["opened"] == 1

    async with SessionLocal() as session:
        request = await verification_repo.get_pending_for_principal(session, principal_id)
    assert request is not None
    assert request.stage == LifecycleState.VERIFICATION_PENDING.value
    assert request.expires_at.replace(tzinfo=None) == (scan_at + timedelta(hours=72)).replace(tzinfo=None)


@pytest.mark.asyncio
async def test_executor_override_after_a_rejected_beneficiary_pin() -> None:
    principal_id = await create_principal(executor_override=True)
    beneficiary_a = await create_party(principal_id, role="beneficiary")
    beneficiary_b = await create_party(principal_id, role="beneficiary")
    executor = await create_party(principal_id, role="executor")
    channel = RecordingChannel()
    store = FakePayloadStore()

    async with SessionLocal() as session:
        await record_checkin(session, principal_id, now=T0)
    opened_at = T0 + timedelta(days=22)
    await run_scheduler_cycle(now=opened_at, channel=channel)
    token = channel.verification_tokens()[executor]
    async with SessionLocal() as session:
        resolved = await submit_report(session, token, "deceased", channel=channel, now=opened_at + timedelta(hours=1))
    pins = channel.pins()
    attempt_at = opened_at + timedelta(days=1)

    async with SessionLocal() as session:
        with pytest.raises(PolicyNotSatisfiedError):
            await attempt_unlock(
                session,
                resolved.id,
                [CredentialSubmission(person_id=beneficiary_a, pin=pins[beneficiary_a])],
                payload_store=store,
                now=attempt_at,
            )
        with pytest.raises(WrongCredentialError):
            await attempt_unlock(
                session,
                resolved.id,
                [CredentialSubmission(person_id=beneficiary_b, pin="9" + pins[beneficiary_b])],
                payload_store=store,
                now=attempt_at,
            )
        result = await attempt_unlock(
            session,
            resolved.id,
            [CredentialSubmission(person_id=executor, pin=pins[executor])],
            payload_store=store,
            now=attempt_at,
        )

    assert result.rule == RULE_EXECUTOR_OVERRIDE
    assert len(store.calls) == 1
    async with SessionLocal() as session:
        rows = await session.execute(select(UnlockCredential).where(UnlockCredential.request_id == resolved.id))
        used = {credential.person_id: credential.used for credential in rows.scalars().all()}
    assert used == {beneficiary_a: False, beneficiary_b: False, executor: True}


@pytest.mark.asyncio
async def test_expired_request_is_not_touched_by_a_later_checkin() -> None:
    principal_id = await create_principal()
    await create_party(principal_id, role="beneficiary")
    channel = RecordingChannel()
    async with SessionLocal() as session:
        await record_checkin(session, principal_id, now=T0)
    opened_at = T0 + timedelta(days=22)
    await run_scheduler_cycle(now=opened_at, channel=channel)

    after_window = opened_at + timedelta(hours=49)
    report = await run_scheduler_cycle(now=after_window, channel=channel)
    assert report["expired"] == 1
    assert report["failsafe"] == 0

    async with SessionLocal() as session:
        expired_state = await get_lifecycle_state(session, principal_id, now=after_window)
    assert expired_state.state is LifecycleState.EXPIRED_UNRESOLVED
    assert channel.of_template("failsafe_alert") == []
    request_id = expired_state.request_id

    async with SessionLocal() as session:
        await record_checkin(session, principal_id, now=after_window + timedelta(hours=1))
        request = await verification_repo.get_request(session, request_id, refresh=True)
        credentials = await session.execute(select(UnlockCredential).where(UnlockCredential.request_id == request_id))
        snapshot = await get_lifecycle_state(session, principal_id, now=after_window + timedelta(hours=1))

    assert request.stage == LifecycleState.EXPIRED_UNRESOLVED.value
    assert request.status == "expired"
    assert list(credentials.scalars().all()) == []
    assert snapshot.state is LifecycleState.ALIVE
