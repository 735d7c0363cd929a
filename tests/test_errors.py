from __future__ import annotations

import asyncio
import socket

import httpx
import pydantic
import pytest

from vidcopilot.inference_core.errors import (
    AllProvidersFailedError,
    APIResponseError,
    CircuitBreakerOpenError,
    InvalidResponseError,
    ProviderError,
    ProviderFailure,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
    StaleProviderError,
    classify_error,
    error_for_status,
    is_stale_failure,
    retry_after_hint,
)
from vidcopilot.inference_core.retry.service import retry_error_type
from vidcopilot.models.schemas import CategoryAnalysis
from vidcopilot.services.streaming import retry_message


@pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
def test_transient_statuses_are_retryable(status):
    assert error_for_status("p", status).retryable is True


@pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
def test_client_statuses_are_terminal(status):
    assert error_for_status("p", status).retryable is False


def test_breaker_open_is_not_retryable():
    assert CircuitBreakerOpenError("p").retryable is False


def test_classify_error_handles_library_exceptions():
    request = httpx.Request("POST", "https://example.com")
    response = httpx.Response(502, request=request)

    assert isinstance(classify_error(asyncio.TimeoutError(), "p"), ProviderTimeoutError)
    assert isinstance(classify_error(httpx.ReadTimeout("t", request=request), "p"), ProviderTimeoutError)
    assert isinstance(classify_error(ConnectionResetError(), "p"), ProviderUnavailableError)
    dns_failure = classify_error(socket.gaierror(-2, "Name or service not known"), "p")
    assert isinstance(dns_failure, ProviderUnavailableError)
    assert dns_failure.retryable is True

    status_error = httpx.HTTPStatusError("bad gateway", request=request, response=response)
    classified = classify_error(status_error, "p")
    assert isinstance(classified, APIResponseError)
    assert classified.status_code == 502

    with pytest.raises(pydantic.ValidationError) as schema_error:
        CategoryAnalysis.model_validate({"issues": 3})
    assert isinstance(classify_error(schema_error.value, "p"), InvalidResponseError)

    unknown = classify_error(KeyError("x"), "p")
    assert type(unknown) is ProviderError
    assert unknown.retryable is False

    original = RateLimitError("p")
    assert classify_error(original, "p") is original


def test_retry_after_hint_sources():
    assert retry_after_hint(RateLimitError("p", retry_after=3)) == 3.0
    assert retry_after_hint(APIResponseError("p", 429, "Please retry in 12.5s.")) == 12.5
    assert retry_after_hint(ProviderUnavailableError("p")) is None


def test_stale_detection_looks_inside_chain_failures():
    stale = StaleProviderError("p")
    wrapped = AllProvidersFailedError(
        [ProviderFailure("a", ProviderUnavailableError("a")), ProviderFailure("p", stale)]
    )
    assert is_stale_failure(stale) is True
    assert is_stale_failure(wrapped) is True
    assert is_stale_failure(AllProvidersFailedError([ProviderFailure("a", ProviderUnavailableError("a"))])) is False
    assert wrapped.details["providers"] == ["a", "p"]


def test_retry_error_types_and_messages():
    assert retry_error_type(APIResponseError("p", 429, "RESOURCE_EXHAUSTED: quota")) == "quota"
    assert retry_error_type(RateLimitError("p")) == "rate_limit"
    assert retry_error_type(ProviderTimeoutError("p", 30)) == "timeout"
    assert retry_error_type(APIResponseError("p", 502, "bad gateway")) == "server_error"
    assert retry_error_type(InvalidResponseError("p")) == "unknown"

    assert retry_message("quota", 12.5, 1, 3) == (
        "API quota exceeded. Waiting 13s before retry (2 attempts left)..."
    )
    assert retry_message("timeout", 2.0, 2, 3) == "Request timed out. Retrying in 2s (1 attempts left)..."
