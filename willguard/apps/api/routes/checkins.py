from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from willguard.apps.api.deps import get_db
from willguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from willguard.apps.api.response import SuccessEnvelope, success_response
from willguard.core.clock import as_utc
from willguard.domain.models import CheckinRecord
from willguard.services.checkins import get_current, list_history, record_checkin
from willguard.services.verification import get_lifecycle_state

router = APIRouter(prefix="/principals", tags=["checkins"], responses=DEFAULT_ERROR_RESPONSES)


class CheckinResponse(BaseModel):
    id: str
    principal_id: str
    checked_in_at: datetime
    next_check_in: datetime
    interval_days: int
    status: str
    source: str


class LifecycleResponse(BaseModel):
    principal_id: str
    state: str
    checkin_id: str | None
    next_check_in: datetime | None
    days_overdue: int
    request_id: str | None
    request_expires_at: datetime | None


def _to_response(record: CheckinRecord) -> CheckinResponse:
    return CheckinResponse(
        id=record.id,
        principal_id=record.principal_id,
        checked_in_at=as_utc(record.checked_in_at),
        next_check_in=as_utc(record.next_check_in),
        interval_days=record.interval_days,
        status=record.status,
        source=record.source,
    )


@router.post("/{principal_id}/checkins", status_code=201, response_model=SuccessEnvelope[CheckinResponse])
async def create_checkin(principal_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    record = await record_checkin(db, principal_id)
    return success_response(request=request, data=_to_response(record))


@router.get("/{principal_id}/checkins/current", response_model=SuccessEnvelope[CheckinResponse])
async def current_checkin(principal_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    record = await get_current(db, principal_id)
    return success_response(request=request, data=_to_response(record))


@router.get("/{principal_id}/checkins", response_model=SuccessEnvelope[list[CheckinResponse]])
async def checkin_history(
    principal_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> dict:
    records = await list_history(db, principal_id, limit=limit)
    data = [_to_response(record) for record in records]
    return success_response(request=request, data=data)


@router.get("/{principal_id}/lifecycle", response_model=SuccessEnvelope[LifecycleResponse])
async def lifecycle_state(principal_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    snapshot = await get_lifecycle_state(db, principal_id)
    payload = LifecycleResponse(
        principal_id=snapshot.principal_id,
        state=snapshot.state.value,
        checkin_id=snapshot.checkin_id,
        next_check_in=snapshot.next_check_in,
        days_overdue=snapshot.days_overdue,
        request_id=snapshot.request_id,
        request_expires_at=snapshot.request_expires_at,
    )
    return success_response(request=request, data=payload)
