from __future__ import annotations

from datetime import timedelta

import pytest

from willguard.core.errors import IllegalTransitionError
from willguard.domain.models import VerificationRequest
from willguard.domain.state import LifecycleState
from willguard.persistence.db import SessionLocal
from willguard.services.admin import confirm_deceased
from willguard.services.scheduler import run_scheduler_cycle
from willguard.services.verification import submit_report
from willguard.tests.utils.fakes import RecordingChannel, UnavailablePartyDirectory
from willguard.tests.utils.seed import Household, create_household, open_request, overdue_instant


async def _request(request_id: str) -> VerificationRequest:
    async with SessionLocal() as session:
        return await session.get(VerificationRequest, request_id)


async def _report_deceased_while_directory_is_down(household: Household, channel: RecordingChannel):
    # The report commits; issuing credentials fails on the party lookup.
    request = await open_request(household, channel, now=overdue_instant())
    token = channel.verification_tokens()[household.executor_id]
    reported_at = overdue_instant() + timedelta(hours=2)
    directory = UnavailablePartyDirectory()
    async with SessionLocal() as session:
        resolved = await submit_report(session, token, "deceased", channel=channel, now=reported_at, parties=directory)
    assert directory.calls == 1
    return request.id, resolved, reported_at


@pytest.mark.asyncio
async def test_deceased_report_survives_a_failed_credential_issue() -> None:
    household = await create_household()
    channel = RecordingChannel()
    request_id, resolved, _reported_at = await _report_deceased_while_directory_is_down(household, channel)

    assert resolved.stage == LifecycleState.RESOLVED_DECEASED.value
    assert resolved.result == "confirmed_deceased"
    assert resolved.pins_issued_at is None
    assert channel.pins() == {}
    assert (await _request(request_id)).stage == LifecycleState.RESOLVED_DECEASED.value


@pytest.mark.asyncio
async def test_next_cycle_issues_the_missing_credentials_once() -> None:
    household = await create_household()
    channel = RecordingChannel()
    request_id, _resolved, reported_at = await _report_deceased_while_directory_is_down(household, channel)

    report = await run_scheduler_cycle(now=reported_at + timedelta(days=1), channel=channel)

    assert report["credentials_issued"] == 1
    stored = await _request(request_id)
    assert stored.stage == LifecycleState.PINS_ISSUED.value
    assert stored.pins_issued_at is not None
    assert sorted(channel.pins()) == sorted(household.party_ids)

    report = await run_scheduler_cycle(now=reported_at + timedelta(days=2), channel=channel)
    assert report["credentials_issued"] == 0
    assert len(channel.of_template("unlock_pin")) == 3


@pytest.mark.asyncio
async def test_admin_can_retry_a_stalled_credential_issue() -> None:
    household = await create_household()
    channel = RecordingChannel()
    request_id, resolved, reported_at = await _report_deceased_while_directory_is_down(household, channel)

    async with SessionLocal() as session:
        confirmed = await confirm_deceased(
            session, request_id, channel=channel, actor_id="ops", now=reported_at + timedelta(hours=1)
        )

    assert confirmed.stage == LifecycleState.PINS_ISSUED.value
    # The party's resolution is kept as reported.
    assert confirmed.resolved_by_party_id == household.executor_id
    assert confirmed.resolved_at == resolved.resolved_at
    assert sorted(channel.pins()) == sorted(household.party_ids)

    async with SessionLocal() as session:
        with pytest.raises(IllegalTransitionError):
            await confirm_deceased(session, request_id, channel=channel, now=reported_at + timedelta(hours=2))
    assert len(channel.of_template("unlock_pin")) == 3
