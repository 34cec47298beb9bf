from __future__ import annotations

from datetime import timedelta

import pytest

from willguard.persistence.db import SessionLocal
from willguard.persistence.repos import dispatch as dispatch_repo
from willguard.services.escalation import ESCALATION_ACTION, run_escalation
from willguard.tests.utils.fakes import RecordingChannel
from willguard.tests.utils.seed import T0, check_in, create_household, issue_pins, set_principal_flags


DEADLINE = T0 + timedelta(days=14)


async def _escalate(channel: RecordingChannel, *, now, force: bool = False):
    async with SessionLocal() as session:
        return await run_escalation(session, channel=channel, now=now, force=force)


@pytest.mark.asyncio
async def test_nothing_happens_before_the_deadline() -> None:
    household = await create_household()
    await check_in(household.principal_id)
    channel = RecordingChannel()
    outcomes = await _escalate(channel, now=DEADLINE - timedelta(minutes=1))
    assert outcomes == []
    assert channel.sent == []


@pytest.mark.asyncio
async def test_mild_reminder_goes_to_the_principal_only() -> None:
    household = await create_household()
    await check_in(household.principal_id)
    channel = RecordingChannel()

    outcomes = await _escalate(channel, now=DEADLINE + timedelta(days=2, hours=3))

    assert len(outcomes) == 1
    outcome = outcomes[0]
    assert outcome.action == "sent"
    assert outcome.days_overdue == 2
    assert outcome.urgency == "mild"
    assert not outcome.parties_alerted
    assert channel.recipient_ids("checkin_reminder") == [household.principal_id]
    assert channel.of_template("missed_checkin_alert") == []


@pytest.mark.asyncio
async def test_parties_are_alerted_once_grace_has_passed() -> None:
    household = await create_household(grace_days=7)
    await check_in(household.principal_id)
    channel = RecordingChannel()

    outcomes = await _escalate(channel, now=DEADLINE + timedelta(days=9))

    assert outcomes[0].urgency == "severe"
    assert outcomes[0].parties_alerted
    assert sorted(channel.recipient_ids("missed_checkin_alert")) == sorted(household.party_ids)
    assert outcomes[0].sent_count == 4


@pytest.mark.asyncio
async def test_rerun_inside_dedup_window_is_suppressed() -> None:
    household = await create_household()
    await check_in(household.principal_id)
    channel = RecordingChannel()
    first_run = DEADLINE + timedelta(days=1)

    await _escalate(channel, now=first_run)
    repeat = await _escalate(channel, now=first_run + timedelta(hours=6))
    assert repeat[0].action == "skipped_dedup"
    assert len(channel.sent) == 1

    later = await _escalate(channel, now=first_run + timedelta(hours=25))
    assert later[0].action == "sent"
    assert len(channel.sent) == 2


@pytest.mark.asyncio
async def test_force_bypasses_dedup() -> None:
    household = await create_household()
    await check_in(household.principal_id)
    channel = RecordingChannel()
    first_run = DEADLINE + timedelta(days=1)

    await _escalate(channel, now=first_run)
    forced = await _escalate(channel, now=first_run + timedelta(minutes=5), force=True)
    assert forced[0].action == "sent"
    assert len(channel.sent) == 2

    async with SessionLocal() as session:
        logs = await dispatch_repo.list_dispatches(
            session, principal_id=household.principal_id, action=ESCALATION_ACTION
        )
    assert len(logs) == 2
    assert logs[0].details_json["forced"] is True


@pytest.mark.asyncio
async def test_failed_sends_do_not_count_as_notified() -> None:
    household = await create_household()
    await check_in(household.principal_id)
    failing = RecordingChannel(fail_all=True)
    first_run = DEADLINE + timedelta(days=1)

    outcomes = await _escalate(failing, now=first_run)
    assert outcomes[0].sent_count == 0
    assert outcomes[0].failed_count == 1

    async with SessionLocal() as session:
        cursor = await dispatch_repo.get_cursor(
            session, principal_id=household.principal_id, action=ESCALATION_ACTION
        )
        logs = await dispatch_repo.list_dispatches(session, principal_id=household.principal_id)
    assert cursor is None
    assert len(logs) == 1

    # The next cycle tries again instead of treating the principal as notified.
    retry = await _escalate(RecordingChannel(), now=first_run + timedelta(minutes=10))
    assert retry[0].action == "sent"
    assert retry[0].sent_count == 1


@pytest.mark.asyncio
async def test_partial_failure_still_advances_the_cursor() -> None:
    household = await create_household()
    await check_in(household.principal_id)
    channel = RecordingChannel(fail_for={household.executor_id})

    outcomes = await _escalate(channel, now=DEADLINE + timedelta(days=8))
    assert outcomes[0].sent_count == 3
    assert outcomes[0].failed_count == 1

    repeat = await _escalate(channel, now=DEADLINE + timedelta(days=8, hours=1))
    assert repeat[0].action == "skipped_dedup"


@pytest.mark.asyncio
async def test_deceased_principal_gets_no_reminders() -> None:
    household = await create_household()
    channel = RecordingChannel()
    _request_id, _pins, reported_at = await issue_pins(household, channel)
    channel.clear()

    outcomes = await _escalate(channel, now=reported_at + timedelta(days=3))
    assert [outcome.action for outcome in outcomes] == ["skipped_deceased"]
    assert channel.sent == []


@pytest.mark.asyncio
async def test_disabled_principal_is_skipped() -> None:
    household = await create_household()
    await check_in(household.principal_id)
    await set_principal_flags(household.principal_id, checkin_enabled=False)
    channel = RecordingChannel()

    outcomes = await _escalate(channel, now=DEADLINE + timedelta(days=3))
    assert [outcome.action for outcome in outcomes] == ["skipped_disabled"]
    assert channel.sent == []


@pytest.mark.asyncio
async def test_principal_without_contact_details_has_no_recipients() -> None:
    household = await create_household(email=None)
    await check_in(household.principal_id)
    channel = RecordingChannel()

    outcomes = await _escalate(channel, now=DEADLINE + timedelta(days=1))
    assert outcomes[0].action == "skipped_no_recipients"
