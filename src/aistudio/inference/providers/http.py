from __future__ import annotations

import logging
import os
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from ...config import HttpProviderConfig
from ...errors import NetworkError, ProviderRejectedError
from ..provider import InferenceProvider
from ..types import (
    DEFAULT_MODELS,
    PollResult,
    ProviderHandle,
    ProviderRequest,
    PushHandler,
    RemoteStatus,
    extract_output_url,
)

logger = logging.getLogger(__name__)

# Queue endpoints answer these while a request is still settling.
TRANSIENT_STATUS_CODES = frozenset({400, 405, 408, 429})

_REMOTE_STATUS = {
    "IN_QUEUE": RemoteStatus.QUEUED,
    "IN_PROGRESS": RemoteStatus.IN_PROGRESS,
    "COMPLETED": RemoteStatus.COMPLETED,
    "FAILED": RemoteStatus.FAILED,
    "ERROR": RemoteStatus.FAILED,
}


def _is_transient(status_code: int) -> bool:
    return status_code in TRANSIENT_STATUS_CODES or status_code >= 500


def parse_webhook(payload: dict[str, Any]) -> tuple[Optional[str], PollResult]:
    """Decode a queue webhook body into (request id, result).

    The body carries ``status`` of ``OK`` or ``ERROR`` and the model output
    under ``payload``.
    """
    request_id = payload.get("request_id")
    status = str(payload.get("status", "")).upper()
    if status == "OK":
        body = payload.get("payload") or {}
        url = extract_output_url(body) if isinstance(body, dict) else None
        if url:
            return request_id, PollResult(RemoteStatus.COMPLETED, output_url=url)
        return request_id, PollResult(RemoteStatus.FAILED, error="No image in response")
    error = payload.get("error") or "Processing failed"
    return request_id, PollResult(RemoteStatus.FAILED, error=str(error))


class HttpQueueProvider(InferenceProvider):
    """Client for a queue-style inference REST API.

    ``POST {base_url}/{model}`` queues a request; status and result are read
    from the URLs returned by the queue (or built from the request id).
    """

    def __init__(
        self,
        config: HttpProviderConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config
        api_key = os.environ.get(config.api_key_env, "")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Key {api_key}"
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=config.timeout_seconds,
            transport=transport,
        )
        self._push: Optional[PushHandler] = None

    @property
    def provider_id(self) -> str:
        return "http"

    def _model_url(self, model_id: str) -> str:
        return f"{self._config.base_url.rstrip('/')}/{model_id}"

    def _webhook_url(self, correlation_id: str) -> Optional[str]:
        if not self._config.webhook_url:
            return None
        sep = "&" if "?" in self._config.webhook_url else "?"
        return f"{self._config.webhook_url}{sep}{urlencode({'correlation_id': correlation_id})}"

    async def submit(self, req: ProviderRequest) -> ProviderHandle:
        model_id = DEFAULT_MODELS[req.kind]
        url = self._model_url(model_id)
        webhook = self._webhook_url(req.correlation_id)
        if webhook:
            url = f"{url}?{urlencode({'fal_webhook': webhook})}"

        body = {"image_url": req.image_url, **req.params}
        try:
            response = await self._client.post(url, json=body)
        except httpx.HTTPError as e:
            raise NetworkError(f"Network error submitting to {model_id}: {e}") from e

        if response.status_code >= 500:
            raise NetworkError(f"Provider unavailable (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise ProviderRejectedError(_error_text(response), response.status_code)

        data = _json_body(response)
        if data is None:
            raise ProviderRejectedError("Malformed queue response", response.status_code)
        request_id = data.get("request_id")
        if not request_id:
            raise ProviderRejectedError("No request id in queue response")
        logger.info("Queued %s request %s for job %s", model_id, request_id, req.correlation_id)
        return ProviderHandle(
            correlation_id=req.correlation_id,
            request_id=request_id,
            model_id=model_id,
            status_url=data.get("status_url"),
            response_url=data.get("response_url"),
        )

    async def poll(self, handle: ProviderHandle) -> PollResult:
        base = f"{self._model_url(handle.model_id)}/requests/{handle.request_id}"
        status_url = handle.status_url or f"{base}/status"
        try:
            response = await self._client.get(status_url)
        except httpx.HTTPError as e:
            raise NetworkError(f"Network error polling {handle.request_id}: {e}") from e

        if _is_transient(response.status_code):
            logger.debug("Transient status %s for %s", response.status_code, handle.request_id)
            return PollResult(RemoteStatus.IN_PROGRESS)
        if response.status_code >= 400:
            return PollResult(RemoteStatus.FAILED, error=_error_text(response))

        data = _json_body(response)
        if data is None:
            logger.debug("Unreadable status body for %s", handle.request_id)
            return PollResult(RemoteStatus.IN_PROGRESS)
        status = _REMOTE_STATUS.get(str(data.get("status", "")).upper(), RemoteStatus.IN_PROGRESS)
        if status is RemoteStatus.FAILED:
            return PollResult(status, error=str(data.get("error") or "Processing failed"))
        if status is not RemoteStatus.COMPLETED:
            return PollResult(status)
        return await self._fetch_result(handle, handle.response_url or base)

    async def _fetch_result(self, handle: ProviderHandle, url: str) -> PollResult:
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as e:
            raise NetworkError(f"Network error fetching result {handle.request_id}: {e}") from e
        if _is_transient(response.status_code):
            return PollResult(RemoteStatus.IN_PROGRESS)
        if response.status_code >= 400:
            return PollResult(RemoteStatus.FAILED, error=_error_text(response))
        data = _json_body(response)
        if data is None:
            return PollResult(RemoteStatus.FAILED, error="Malformed result response")
        output_url = extract_output_url(data)
        if not output_url:
            return PollResult(RemoteStatus.FAILED, error="No image in response")
        return PollResult(RemoteStatus.COMPLETED, output_url=output_url)

    def bind_push(self, handler: PushHandler) -> None:
        self._push = handler

    def handle_webhook(self, correlation_id: str, payload: dict[str, Any]) -> bool:
        """Deliver a queue webhook for the job named by the callback's ``correlation_id``.

        Returns True when the completion settled the job.
        """
        request_id, result = parse_webhook(payload)
        if self._push is None:
            logger.warning("Webhook for %s (%s) arrived with no receiver bound", correlation_id, request_id)
            return False
        return self._push(correlation_id, result)

    async def aclose(self) -> None:
        await self._client.aclose()


def _json_body(response: httpx.Response) -> Optional[dict[str, Any]]:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _error_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("error") or data.get("message")
        if detail:
            return str(detail)
    return f"HTTP {response.status_code}"
