from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from willguard.core.errors import (
    AlreadyUnlockedError,
    IllegalTransitionError,
    NoUnlockMechanismError,
    NotFoundError,
    PayloadStoreError,
    PolicyNotSatisfiedError,
    WrongCredentialError,
)
from willguard.domain.models import PayloadRelease, UnlockCredential, VerificationRequest
from willguard.domain.state import LifecycleState
from willguard.persistence.db import SessionLocal
from willguard.persistence.repos import audit as audit_repo
from willguard.services.unlock import (
    RULE_EXECUTOR_OVERRIDE,
    RULE_FULL_PIN,
    RULE_TRUSTED_CONTACT_OVERRIDE,
    CredentialSubmission,
    attempt_unlock,
)
from willguard.tests.utils.fakes import FakePayloadStore, RecordingChannel
from willguard.tests.utils.seed import create_household, issue_pins, open_request


async def _unlock(request_id: str, submissions: list[CredentialSubmission], store: FakePayloadStore, *, now):
    async with SessionLocal() as session:
        return await attempt_unlock(session, request_id, submissions, payload_store=store, now=now)


async def _credentials(request_id: str) -> list[UnlockCredential]:
    async with SessionLocal() as session:
        result = await session.execute(select(UnlockCredential).where(UnlockCredential.request_id == request_id))
        return list(result.scalars().all())


async def _stage(request_id: str) -> str:
    async with SessionLocal() as session:
        request = await session.get(VerificationRequest, request_id)
    return request.stage


def _all(pins: dict[str, str]) -> list[CredentialSubmission]:
    return [CredentialSubmission(person_id=person_id, pin=pin) for person_id, pin in pins.items()]


@pytest.mark.asyncio
async def test_full_pin_set_releases_the_payload_once() -> None:
    household = await create_household()
    request_id, pins, reported_at = await issue_pins(household, RecordingChannel())
    store = FakePayloadStore()

    result = await _unlock(request_id, _all(pins), store, now=reported_at + timedelta(days=1))

    assert result.rule == RULE_FULL_PIN
    assert result.payload_ref == f"payload://test/{household.principal_id}/{request_id}"
    assert store.calls == [(household.principal_id, request_id)]
    assert await _stage(request_id) == LifecycleState.UNLOCKED.value
    assert all(credential.used for credential in await _credentials(request_id))

    async with SessionLocal() as session:
        release = await session.get(PayloadRelease, request_id)
    assert release.payload_ref == result.payload_ref
    assert release.unlock_rule == RULE_FULL_PIN


@pytest.mark.asyncio
async def test_second_unlock_returns_original_reference_without_release() -> None:
    household = await create_household()
    request_id, pins, reported_at = await issue_pins(household, RecordingChannel())
    store = FakePayloadStore()
    first = await _unlock(request_id, _all(pins), store, now=reported_at + timedelta(days=1))

    with pytest.raises(AlreadyUnlockedError) as excinfo:
        await _unlock(request_id, _all(pins), store, now=reported_at + timedelta(days=2))
    assert excinfo.value.payload_ref == first.payload_ref
    assert len(store.calls) == 1


@pytest.mark.asyncio
async def test_unlocked_reference_requires_a_valid_credential() -> None:
    household = await create_household(executor_override=True)
    request_id, pins, reported_at = await issue_pins(household, RecordingChannel())
    store = FakePayloadStore()
    executor = household.executor_id
    own_pin = [CredentialSubmission(person_id=executor, pin=pins[executor])]
    first = await _unlock(request_id, own_pin, store, now=reported_at + timedelta(days=1))
    assert first.rule == RULE_EXECUTOR_OVERRIDE
    later = reported_at + timedelta(days=2)

    with pytest.raises(WrongCredentialError) as unknown:
        await _unlock(request_id, [CredentialSubmission(person_id="nobody", pin="0000")], store, now=later)
    assert unknown.value.person_ids == ["nobody"]

    wrong_pin = "0" if pins[executor][0] != "0" else "1"
    with pytest.raises(WrongCredentialError):
        await _unlock(
            request_id, [CredentialSubmission(person_id=executor, pin=wrong_pin + pins[executor][1:])], store, now=later
        )
    with pytest.raises(WrongCredentialError):
        await _unlock(request_id, [], store, now=later)

    # A still-unused credential for the request is also accepted for the retry.
    beneficiary = household.beneficiary_id
    with pytest.raises(AlreadyUnlockedError) as excinfo:
        await _unlock(request_id, [CredentialSubmission(person_id=beneficiary, pin=pins[beneficiary])], store, now=later)
    assert excinfo.value.payload_ref == first.payload_ref
    assert len(store.calls) == 1

    async with SessionLocal() as session:
        rejected = await audit_repo.list_events(
            session, principal_id=household.principal_id, event_type="unlock.rejected", request_id=request_id
        )
    assert {event.metadata_json["reason"] for event in rejected} == {"wrong_credential_after_unlock"}
    assert len(rejected) == 3


@pytest.mark.asyncio
async def test_wrong_pin_rejects_the_whole_attempt() -> None:
    household = await create_household()
    request_id, pins, reported_at = await issue_pins(household, RecordingChannel())
    store = FakePayloadStore()
    submissions = _all(pins)
    submissions[1] = CredentialSubmission(person_id=submissions[1].person_id, pin="0000000000x")

    with pytest.raises(WrongCredentialError) as excinfo:
        await _unlock(request_id, submissions, store, now=reported_at + timedelta(days=1))

    assert excinfo.value.person_ids == [submissions[1].person_id]
    assert store.calls == []
    assert await _stage(request_id) == LifecycleState.PINS_ISSUED.value
    assert not any(credential.used for credential in await _credentials(request_id))

    async with SessionLocal() as session:
        events = await audit_repo.list_events(
            session, principal_id=household.principal_id, event_type="unlock.rejected"
        )
    assert len(events) == 1
    assert events[0].outcome == "failure"
    assert "pin" not in events[0].metadata_json

    # The same credentials still work afterwards.
    result = await _unlock(request_id, _all(pins), store, now=reported_at + timedelta(days=1, minutes=1))
    assert result.rule == RULE_FULL_PIN


@pytest.mark.asyncio
async def test_unknown_person_counts_as_wrong_credential() -> None:
    household = await create_household(executor_override=True)
    request_id, pins, reported_at = await issue_pins(household, RecordingChannel())
    submissions = [
        CredentialSubmission(person_id=household.executor_id, pin=pins[household.executor_id]),
        CredentialSubmission(person_id="stranger", pin="1234567890"),
    ]
    with pytest.raises(WrongCredentialError):
        await _unlock(request_id, submissions, FakePayloadStore(), now=reported_at + timedelta(days=1))


@pytest.mark.asyncio
async def test_partial_pins_do_not_satisfy_pin_system_alone() -> None:
    household = await create_household()
    request_id, pins, reported_at = await issue_pins(household, RecordingChannel())
    store = FakePayloadStore()
    submissions = [CredentialSubmission(person_id=household.executor_id, pin=pins[household.executor_id])]

    with pytest.raises(PolicyNotSatisfiedError):
        await _unlock(request_id, submissions, store, now=reported_at + timedelta(days=1))
    assert store.calls == []
    assert not any(credential.used for credential in await _credentials(request_id))


@pytest.mark.asyncio
async def test_empty_submission_is_rejected() -> None:
    household = await create_household()
    request_id, _pins, reported_at = await issue_pins(household, RecordingChannel())
    with pytest.raises(PolicyNotSatisfiedError):
        await _unlock(request_id, [], FakePayloadStore(), now=reported_at + timedelta(days=1))


@pytest.mark.asyncio
async def test_executor_override_unlocks_with_primary_executor_pin() -> None:
    household = await create_household(executor_override=True)
    request_id, pins, reported_at = await issue_pins(household, RecordingChannel())
    submissions = [CredentialSubmission(person_id=household.executor_id, pin=pins[household.executor_id])]

    result = await _unlock(request_id, submissions, FakePayloadStore(), now=reported_at + timedelta(days=1))

    assert result.rule == RULE_EXECUTOR_OVERRIDE
    used = {credential.person_id for credential in await _credentials(request_id) if credential.used}
    assert used == {household.executor_id}


@pytest.mark.asyncio
async def test_trusted_contact_override() -> None:
    household = await create_household(pin_system=False, trusted_contact_override=True)
    request_id, pins, reported_at = await issue_pins(household, RecordingChannel())
    submissions = [CredentialSubmission(person_id=household.trusted_id, pin=pins[household.trusted_id])]

    result = await _unlock(request_id, submissions, FakePayloadStore(), now=reported_at + timedelta(days=1))
    assert result.rule == RULE_TRUSTED_CONTACT_OVERRIDE


@pytest.mark.asyncio
async def test_no_mechanism_enabled() -> None:
    household = await create_household(pin_system=False, executor_override=False, trusted_contact_override=False)
    request_id, pins, reported_at = await issue_pins(household, RecordingChannel())
    store = FakePayloadStore()
    with pytest.raises(NoUnlockMechanismError):
        await _unlock(request_id, _all(pins), store, now=reported_at + timedelta(days=1))
    assert store.calls == []


@pytest.mark.asyncio
async def test_payload_store_failure_leaves_request_locked() -> None:
    household = await create_household()
    request_id, pins, reported_at = await issue_pins(household, RecordingChannel())
    failing = FakePayloadStore(fail=True)

    with pytest.raises(PayloadStoreError):
        await _unlock(request_id, _all(pins), failing, now=reported_at + timedelta(days=1))
    assert await _stage(request_id) == LifecycleState.PINS_ISSUED.value
    assert not any(credential.used for credential in await _credentials(request_id))

    result = await _unlock(request_id, _all(pins), FakePayloadStore(), now=reported_at + timedelta(days=1, hours=1))
    assert result.rule == RULE_FULL_PIN


@pytest.mark.asyncio
async def test_pending_request_cannot_be_unlocked() -> None:
    household = await create_household()
    request = await open_request(household, RecordingChannel())
    with pytest.raises(IllegalTransitionError):
        await _unlock(
            request.id,
            [CredentialSubmission(person_id=household.executor_id, pin="1234567890")],
            FakePayloadStore(),
            now=request.initiated_at + timedelta(hours=1),
        )


@pytest.mark.asyncio
async def test_unknown_request() -> None:
    with pytest.raises(NotFoundError):
        await _unlock("missing", [], FakePayloadStore(), now=None)
