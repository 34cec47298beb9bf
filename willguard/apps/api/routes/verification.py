from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from willguard.apps.api.deps import get_db, get_notification_channel, get_payload_store
from willguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES, UNLOCK_ERROR_RESPONSES
from willguard.apps.api.response import SuccessEnvelope, success_response
from willguard.core.clock import as_utc
from willguard.services.notifications import NotificationChannel
from willguard.services.payloads import PayloadStore
from willguard.services.unlock import CredentialSubmission, attempt_unlock
from willguard.services.verification import submit_report

router = APIRouter(prefix="/verification", tags=["verification"], responses=DEFAULT_ERROR_RESPONSES)


class ReportRequest(BaseModel):
    token: str = Field(min_length=8, max_length=256)
    report: Literal["alive", "deceased"]


class ReportResponse(BaseModel):
    request_id: str
    stage: str
    status: str
    result: str | None


class SubmissionItem(BaseModel):
    person_id: str = Field(min_length=1)
    pin: str = Field(min_length=1, max_length=64)


class UnlockRequest(BaseModel):
    submissions: list[SubmissionItem] = Field(min_length=1, max_length=100)


class UnlockResponse(BaseModel):
    request_id: str
    payload_ref: str
    rule: str
    unlocked_at: datetime


@router.post("/reports", response_model=SuccessEnvelope[ReportResponse])
async def report_status(
    payload: ReportRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    channel: NotificationChannel = Depends(get_notification_channel),
) -> dict:
    verification = await submit_report(db, payload.token, payload.report, channel=channel)
    data = ReportResponse(
        request_id=verification.id,
        stage=verification.stage,
        status=verification.status,
        result=verification.result,
    )
    return success_response(request=request, data=data)


@router.post(
    "/{request_id}/unlock",
    response_model=SuccessEnvelope[UnlockResponse],
    responses=UNLOCK_ERROR_RESPONSES,
)
async def unlock(
    request_id: str,
    payload: UnlockRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    payload_store: PayloadStore = Depends(get_payload_store),
) -> dict:
    submissions = [CredentialSubmission(person_id=item.person_id, pin=item.pin) for item in payload.submissions]
    result = await attempt_unlock(db, request_id, submissions, payload_store=payload_store)
    data = UnlockResponse(
        request_id=result.request_id,
        payload_ref=result.payload_ref,
        rule=result.rule,
        unlocked_at=as_utc(result.unlocked_at),
    )
    return success_response(request=request, data=data)
