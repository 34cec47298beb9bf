from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from willguard.apps.api.response import error_response
from willguard.core.errors import (
    AlreadyUnlockedError,
    ConcurrentUpdateError,
    IllegalTransitionError,
    InvalidTokenError,
    NoUnlockMechanismError,
    NotEnabledError,
    NotFoundError,
    NotificationDeliveryError,
    PayloadStoreError,
    PolicyNotSatisfiedError,
    WillGuardError,
    WrongCredentialError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific classes first; the first isinstance match wins.
_ENGINE_ERRORS: list[tuple[type[WillGuardError], int, str]] = [
    (NotEnabledError, 409, "CHECKIN_DISABLED"),
    (NoUnlockMechanismError, 409, "NO_UNLOCK_MECHANISM"),
    (NotFoundError, 404, "NOT_FOUND"),
    (InvalidTokenError, 400, "INVALID_TOKEN"),
    (IllegalTransitionError, 409, "ILLEGAL_TRANSITION"),
    (ConcurrentUpdateError, 409, "CONCURRENT_UPDATE"),
    (WrongCredentialError, 403, "WRONG_CREDENTIAL"),
    (PolicyNotSatisfiedError, 403, "POLICY_NOT_SATISFIED"),
    (AlreadyUnlockedError, 409, "ALREADY_UNLOCKED"),
    (PayloadStoreError, 502, "PAYLOAD_STORE_UNAVAILABLE"),
    (NotificationDeliveryError, 502, "NOTIFICATION_UNAVAILABLE"),
]


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def classify_engine_error(exc: WillGuardError) -> tuple[int, str, dict[str, Any] | None]:
    for error_type, status_code, code in _ENGINE_ERRORS:
        if isinstance(exc, error_type):
            details: dict[str, Any] | None = None
            if isinstance(exc, AlreadyUnlockedError):
                details = {"payload_ref": exc.payload_ref}
            elif isinstance(exc, WrongCredentialError) and exc.person_ids:
                details = {"person_ids": exc.person_ids}
            elif isinstance(exc, IllegalTransitionError):
                details = {"state": exc.state, "event": exc.event}
            return status_code, code, details
    return 500, "INTERNAL_ERROR", None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def engine_exception_handler(request: Request, exc: WillGuardError) -> JSONResponse:
    status_code, code, details = classify_engine_error(exc)
    if status_code >= 500:
        logger.error("engine_error path=%s code=%s", request.url.path, code, exc_info=exc)
    payload = error_response(request=request, code=code, message=str(exc) or code, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to callers.
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
