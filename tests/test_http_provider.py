from __future__ import annotations

import json

import httpx
import pytest

from vidcopilot.inference_core.errors import (
    APIResponseError,
    InvalidResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
    StaleProviderError,
)
from vidcopilot.inference_core.models.interfaces import ProviderRole
from vidcopilot.providers.http_provider import HttpInferenceProvider

ENDPOINT = "https://inference.example.com/v1/models/thumbnail-lora"


def _provider(handler, **kwargs) -> HttpInferenceProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpInferenceProvider("hf", "thumbnail-lora", ENDPOINT, http_client=client, **kwargs)


@pytest.mark.asyncio
async def test_posts_payload_with_bearer_auth():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"image": "base64data"})

    provider = _provider(handler, api_key=" secret ", role=ProviderRole.PRIMARY)
    result = await provider.invoke({"inputs": "bold travel thumbnail"})

    assert result == {"image": "base64data"}
    assert seen == {
        "method": "POST",
        "auth": "Bearer secret",
        "body": {"inputs": "bold travel thumbnail"},
    }
    assert provider.provider_id == "hf:thumbnail-lora"


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after_header():
    def handler(_request):
        return httpx.Response(429, headers={"Retry-After": "7"}, json={"error": "slow down"})

    with pytest.raises(RateLimitError) as exc_info:
        await _provider(handler).invoke({})
    assert exc_info.value.retry_after == 7.0
    assert "slow down" in str(exc_info.value)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "expected", "retryable"),
    [
        (404, StaleProviderError, False),
        (503, ProviderUnavailableError, True),
        (500, APIResponseError, True),
        (400, APIResponseError, False),
        (401, APIResponseError, False),
    ],
)
async def test_status_codes_map_to_error_taxonomy(status, expected, retryable):
    def handler(_request):
        return httpx.Response(status, json={"error": {"message": "upstream said no"}})

    with pytest.raises(expected) as exc_info:
        await _provider(handler).invoke({})
    assert exc_info.value.retryable is retryable
    assert "upstream said no" in str(exc_info.value)


@pytest.mark.asyncio
async def test_access_denied_message():
    def handler(_request):
        return httpx.Response(403, text="forbidden")

    with pytest.raises(APIResponseError, match="Access denied"):
        await _provider(handler).invoke({})


@pytest.mark.asyncio
async def test_non_json_body_is_invalid_response():
    def handler(_request):
        return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})

    with pytest.raises(InvalidResponseError, match="image/png"):
        await _provider(handler).invoke({})


@pytest.mark.asyncio
async def test_transport_failures_are_classified():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    def stall(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(ProviderUnavailableError):
        await _provider(refuse).invoke({})
    with pytest.raises(ProviderTimeoutError):
        await _provider(stall, timeout=5.0).invoke({})


@pytest.mark.asyncio
async def test_availability_probe():
    def healthy(request):
        assert request.method == "HEAD"
        return httpx.Response(200)

    def broken(_request):
        return httpx.Response(500)

    def unreachable(request):
        raise httpx.ConnectError("dns failure", request=request)

    assert await _provider(healthy).is_available() is True
    assert await _provider(broken).is_available() is False
    assert await _provider(unreachable).is_available() is False


def test_endpoint_is_required():
    with pytest.raises(ValueError):
        HttpInferenceProvider("hf", "m", " ")
