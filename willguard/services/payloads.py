from __future__ import annotations

import logging
from typing import Protocol

import httpx

from willguard.core.config import Settings, get_settings
from willguard.core.errors import PayloadStoreError
from willguard.services.resilience import RetryPolicy, retry_async


logger = logging.getLogger(__name__)


class PayloadStore(Protocol):
    async def release(self, principal_id: str, request_id: str) -> str: ...


class HttpPayloadStore:
    """Releases will packages through the payload store HTTP API.

    The verification request id is sent as the idempotency key, so a retried
    release returns the same reference instead of releasing twice.
    """

    def __init__(self, *, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        self._client = httpx.AsyncClient(timeout=self._settings.payload_store_timeout_ms / 1000.0)
        return self._client

    async def release(self, principal_id: str, request_id: str) -> str:
        base_url = self._settings.payload_store_url
        if base_url.startswith("noop://"):
            return f"payload://{principal_id}/{request_id}"

        headers = {"Idempotency-Key": request_id}
        if self._settings.payload_store_api_key:
            headers["Authorization"] = f"Bearer {self._settings.payload_store_api_key}"
        client = self._get_client()
        policy = RetryPolicy(
            timeout_ms=self._settings.payload_store_timeout_ms,
            max_attempts=self._settings.notify_retry_max_attempts,
            backoff_ms=self._settings.notify_retry_backoff_ms,
        )

        async def _call() -> httpx.Response:
            response = await client.post(
                f"{base_url.rstrip('/')}/releases",
                json={"principal_id": principal_id, "request_id": request_id},
                headers=headers,
            )
            if response.status_code >= 400:
                raise httpx.HTTPStatusError(
                    f"payload store rejected release ({response.status_code})",
                    request=response.request,
                    response=response,
                )
            return response

        try:
            response = await retry_async(_call, policy=policy)
        except (httpx.HTTPError, TimeoutError) as exc:
            logger.error("payload_release_failed principal_id=%s request_id=%s", principal_id, request_id)
            raise PayloadStoreError("payload store release failed") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise PayloadStoreError("payload store returned an invalid response") from exc
        payload_ref = body.get("payload_ref") if isinstance(body, dict) else None
        if not payload_ref:
            raise PayloadStoreError("payload store response is missing payload_ref")
        return str(payload_ref)
