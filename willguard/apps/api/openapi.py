from __future__ import annotations

from typing import Any

from willguard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Invalid or expired verification token", code="INVALID_TOKEN", message="verification token is not valid"),
    404: _response("Not found", code="NOT_FOUND", message="principal p_123 not found"),
    409: _response(
        "Conflict with the current lifecycle state",
        code="ILLEGAL_TRANSITION",
        message="no transition from unlocked on admin_reset",
        details={"state": "unlocked", "event": "admin_reset"},
    ),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

ADMIN_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    401: _response("Missing or invalid admin token", code="AUTH_UNAUTHORIZED", message="Missing or invalid admin token"),
    503: _response(
        "Admin API disabled",
        code="ADMIN_API_DISABLED",
        message="Admin token is not configured",
    ),
}

UNLOCK_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    403: _response(
        "Credentials rejected or unlock policy not satisfied",
        code="WRONG_CREDENTIAL",
        message="one or more credentials are invalid",
        details={"person_ids": ["party_1"]},
    ),
    502: _response(
        "Payload store unavailable",
        code="PAYLOAD_STORE_UNAVAILABLE",
        message="payload store release failed",
    ),
}
