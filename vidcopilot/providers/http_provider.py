from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from vidcopilot.inference_core.errors import (
    InvalidResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    error_for_status,
)
from vidcopilot.inference_core.models.interfaces import ProviderRole
from vidcopilot.providers.base import InferenceProvider


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        for key in ("error", "message", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"].strip()
    return f"HTTP {response.status_code}"


class HttpInferenceProvider(InferenceProvider):
    """JSON-over-HTTP model endpoint.

    The payload is posted as-is and the decoded JSON body is returned. Status
    codes are mapped onto the error taxonomy so the retry executor can tell
    transient failures from terminal ones.
    """

    def __init__(
        self,
        name: str,
        model: str,
        endpoint: str,
        *,
        api_key: str = "",
        role: ProviderRole = ProviderRole.PRIMARY,
        timeout: float = 60.0,
        headers: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(model=model, role=role, name=name)
        if not endpoint.strip():
            raise ValueError("endpoint must not be empty")
        self.endpoint = endpoint.strip()
        self.timeout = timeout
        self._api_key = api_key.strip()
        self._extra_headers = dict(headers or {})
        self._http_client = http_client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", **self._extra_headers}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def invoke(self, payload: Any) -> Any:
        async def _do_request(client: httpx.AsyncClient) -> httpx.Response:
            return await client.post(self.endpoint, json=payload, headers=self._headers())

        try:
            if self._http_client is None:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await _do_request(client)
            else:
                response = await _do_request(self._http_client)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(self.provider_id, self.timeout) from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(self.provider_id, str(exc) or type(exc).__name__) from exc

        if response.status_code >= 400:
            raise error_for_status(
                self.provider_id,
                response.status_code,
                _error_message(response),
                retry_after=_retry_after_seconds(response),
            )

        try:
            return response.json()
        except ValueError as exc:
            content_type = response.headers.get("content-type", "unknown")
            raise InvalidResponseError(
                self.provider_id, f"expected JSON body, got {content_type}"
            ) from exc

    async def is_available(self) -> bool:
        try:
            if self._http_client is None:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.head(self.endpoint, headers=self._headers())
            else:
                response = await self._http_client.head(self.endpoint, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.debug(f"Availability probe failed for {self.provider_id}: {exc}")
            return False
        return response.status_code < 400
