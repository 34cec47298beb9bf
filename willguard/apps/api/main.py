from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from willguard.apps.api.errors import (
    engine_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from willguard.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from willguard.apps.api.routes.admin import router as admin_router
from willguard.apps.api.routes.checkins import router as checkins_router
from willguard.apps.api.routes.health import router as health_router
from willguard.apps.api.routes.verification import router as verification_router
from willguard.core.config import get_settings
from willguard.core.errors import WillGuardError
from willguard.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="WillGuard API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request ids or assign one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(WillGuardError)
    async def _engine_exception_handler(request: Request, exc: WillGuardError):
        return await engine_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(checkins_router, prefix=f"/{API_VERSION}")
    app.include_router(verification_router, prefix=f"/{API_VERSION}")
    # Administrative routes are guarded by the X-Admin-Token header.
    app.include_router(admin_router, prefix=f"/{API_VERSION}")

    logger.info("app_created name=%s", get_settings().app_name)
    return app


app = create_app()
