"""JSON envelopes for the WillGuard HTTP API.

Every route answers ``{"data": ..., "meta": ...}`` on success and
``{"error": {"code", "message", "details"}, "meta": ...}`` on failure, with
the request id echoed in ``meta`` so a party's report or unlock attempt can be
matched to the audit trail.
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    # Stable machine code; details carry e.g. rejected person ids or the released reference.
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Set once per request by the middleware; handlers outside it fall back here.
    cached = getattr(request.state, "request_id", None)
    if cached:
        return cached
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    # Models, lists of models and datetimes are encoded to plain JSON here.
    return {"data": jsonable_encoder(data), "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=jsonable_encoder(details) if details else None)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
