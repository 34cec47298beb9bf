from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from willguard.apps.api.deps import get_db, get_notification_channel, require_admin_token
from willguard.apps.api.openapi import ADMIN_ERROR_RESPONSES
from willguard.apps.api.response import SuccessEnvelope, success_response
from willguard.services.admin import confirm_deceased, reset_principal
from willguard.services.notifications import NotificationChannel
from willguard.services.scheduler import run_scheduler_cycle

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    responses=ADMIN_ERROR_RESPONSES,
    dependencies=[Depends(require_admin_token)],
)


class SchedulerRunRequest(BaseModel):
    force: bool = False


class ConfirmDeceasedResponse(BaseModel):
    request_id: str
    principal_id: str
    stage: str
    status: str
    result: str | None


class ResetResponse(BaseModel):
    principal_id: str
    deleted_checkins: int
    cancelled_request_ids: list[str]


@router.post("/scheduler/run", response_model=SuccessEnvelope[dict[str, Any]])
async def run_scheduler(
    request: Request,
    payload: SchedulerRunRequest | None = None,
    channel: NotificationChannel = Depends(get_notification_channel),
) -> dict:
    # Manual trigger; force bypasses the escalation dedup window.
    force = payload.force if payload is not None else False
    report = await run_scheduler_cycle(force=force, channel=channel)
    return success_response(request=request, data=report)


@router.post(
    "/verification/{request_id}/confirm-deceased",
    response_model=SuccessEnvelope[ConfirmDeceasedResponse],
)
async def admin_confirm_deceased(
    request_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    channel: NotificationChannel = Depends(get_notification_channel),
) -> dict:
    verification = await confirm_deceased(db, request_id, channel=channel, actor_id="admin_api")
    data = ConfirmDeceasedResponse(
        request_id=verification.id,
        principal_id=verification.principal_id,
        stage=verification.stage,
        status=verification.status,
        result=verification.result,
    )
    return success_response(request=request, data=data)


@router.post("/principals/{principal_id}/reset", response_model=SuccessEnvelope[ResetResponse])
async def admin_reset_principal(principal_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    result = await reset_principal(db, principal_id, actor_id="admin_api")
    data = ResetResponse(
        principal_id=result.principal_id,
        deleted_checkins=result.deleted_checkins,
        cancelled_request_ids=result.cancelled_request_ids,
    )
    return success_response(request=request, data=data)
