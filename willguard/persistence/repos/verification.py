from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from willguard.domain.models import VerificationRequest, VerificationResponse, VerificationToken
from willguard.domain.state import LifecycleState


async def get_request(session: AsyncSession, request_id: str, *, refresh: bool = False) -> VerificationRequest | None:
    return await session.get(VerificationRequest, request_id, populate_existing=refresh)


async def get_pending_for_principal(session: AsyncSession, principal_id: str) -> VerificationRequest | None:
    result = await session.execute(
        select(VerificationRequest)
        .where(
            VerificationRequest.principal_id == principal_id,
            VerificationRequest.status == "pending",
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_latest_for_principal(session: AsyncSession, principal_id: str) -> VerificationRequest | None:
    result = await session.execute(
        select(VerificationRequest)
        .where(VerificationRequest.principal_id == principal_id)
        .order_by(VerificationRequest.initiated_at.desc(), VerificationRequest.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def compare_and_set_stage(
    session: AsyncSession,
    request_id: str,
    *,
    expected: LifecycleState | Iterable[LifecycleState],
    target: LifecycleState,
    values: dict[str, Any] | None = None,
) -> bool:
    # Atomic stage move; a zero rowcount means another writer got there first.
    expected_stages = [expected] if isinstance(expected, LifecycleState) else list(expected)
    result = await session.execute(
        update(VerificationRequest)
        .where(
            VerificationRequest.id == request_id,
            VerificationRequest.stage.in_([stage.value for stage in expected_stages]),
        )
        .values(stage=target.value, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_due_for_expiry(session: AsyncSession, *, now: datetime) -> list[VerificationRequest]:
    result = await session.execute(
        select(VerificationRequest)
        .where(
            VerificationRequest.stage == LifecycleState.VERIFICATION_PENDING.value,
            VerificationRequest.expires_at <= now,
        )
        .order_by(VerificationRequest.expires_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def list_failsafe_candidates(session: AsyncSession, *, locked_before: datetime) -> list[VerificationRequest]:
    # Requests credentialed or left unanswered for longer than the failsafe period.
    result = await session.execute(
        select(VerificationRequest)
        .where(VerificationRequest.failsafe_notified_at.is_(None))
        .where(
            (
                (VerificationRequest.stage == LifecycleState.PINS_ISSUED.value)
                & (VerificationRequest.pins_issued_at <= locked_before)
            )
            | (
                (VerificationRequest.stage == LifecycleState.EXPIRED_UNRESOLVED.value)
                & (VerificationRequest.expires_at <= locked_before)
            )
        )
        .order_by(VerificationRequest.initiated_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def list_awaiting_credentials(session: AsyncSession) -> list[VerificationRequest]:
    # Resolved as deceased but credentials never committed.
    result = await session.execute(
        select(VerificationRequest)
        .where(
            VerificationRequest.stage == LifecycleState.RESOLVED_DECEASED.value,
            VerificationRequest.pins_issued_at.is_(None),
        )
        .order_by(VerificationRequest.resolved_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def list_open_for_principal(session: AsyncSession, principal_id: str) -> list[VerificationRequest]:
    # Everything not yet finished: administrative reset cancels these.
    closed = [LifecycleState.UNLOCKED.value, LifecycleState.CANCELLED.value, LifecycleState.RESOLVED_ALIVE.value]
    result = await session.execute(
        select(VerificationRequest)
        .where(
            VerificationRequest.principal_id == principal_id,
            VerificationRequest.stage.not_in(closed),
        )
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def add_token(session: AsyncSession, *, token_hash: str, request_id: str, party_id: str) -> VerificationToken:
    token = VerificationToken(token_hash=token_hash, request_id=request_id, party_id=party_id)
    session.add(token)
    return token


async def get_token(session: AsyncSession, token_hash: str) -> VerificationToken | None:
    return await session.get(VerificationToken, token_hash)


async def add_response(
    session: AsyncSession,
    *,
    response_id: str,
    request_id: str,
    party_id: str,
    report: str,
    created_at: datetime,
) -> VerificationResponse:
    response = VerificationResponse(
        id=response_id,
        request_id=request_id,
        party_id=party_id,
        report=report,
        created_at=created_at,
    )
    session.add(response)
    return response
