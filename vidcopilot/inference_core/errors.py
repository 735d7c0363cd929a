"""Error taxonomy for provider calls, fallback chains and batches."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any

import httpx
import pydantic

RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

_RETRY_HINT_PATTERNS = (
    re.compile(r"please retry in (\d+(?:\.\d+)?)\s*s", re.IGNORECASE),
    re.compile(r"retry[_ ]?delay\D*?(\d+(?:\.\d+)?)\s*s", re.IGNORECASE),
)


class InferenceError(Exception):
    """Base error for everything raised by the inference core."""

    code = "INFERENCE_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(InferenceError):
    code = "VALIDATION_ERROR"
    status_code = 400


class ProviderError(InferenceError):
    """A single provider failed to serve a call."""

    code = "PROVIDER_ERROR"

    def __init__(self, provider: str, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message, details={"provider": provider, **(details or {})})
        self.provider = provider


class ProviderUnavailableError(ProviderError):
    code = "PROVIDER_UNAVAILABLE"
    status_code = 503
    retryable = True

    def __init__(self, provider: str, reason: str | None = None):
        message = f"Provider {provider} is unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(provider, message)


class RateLimitError(ProviderError):
    code = "RATE_LIMIT_ERROR"
    status_code = 429
    retryable = True

    def __init__(self, provider: str, retry_after: float | None = None, reason: str | None = None):
        message = f"Rate limit exceeded for {provider}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(provider, message, details={"retry_after": retry_after})
        self.retry_after = retry_after


class ProviderTimeoutError(ProviderError):
    code = "API_TIMEOUT"
    status_code = 504
    retryable = True

    def __init__(self, provider: str, timeout: float | None = None):
        if timeout is None:
            message = f"Request to {provider} timed out"
        else:
            message = f"Request to {provider} timed out after {timeout:g}s"
        super().__init__(provider, message, details={"timeout": timeout})
        self.timeout = timeout


class APIResponseError(ProviderError):
    code = "API_RESPONSE_ERROR"

    def __init__(self, provider: str, status_code: int, message: str):
        super().__init__(provider, message, details={"status_code": status_code})
        self.status_code = status_code
        self.retryable = status_code in RETRYABLE_STATUS_CODES


class GenerationFailedError(ProviderError):
    """Provider accepted the call but produced nothing usable."""

    code = "GENERATION_FAILED"
    retryable = True

    def __init__(self, provider: str, reason: str):
        super().__init__(provider, f"Generation failed for {provider}: {reason}")


class InvalidResponseError(ProviderError):
    code = "INVALID_RESPONSE"
    retryable = True

    def __init__(self, provider: str, reason: str | None = None):
        message = f"Invalid response from {provider}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(provider, message)


class StaleProviderError(ProviderError):
    """The provider handle no longer resolves (model removed, endpoint moved)."""

    code = "STALE_PROVIDER"
    status_code = 404

    def __init__(self, provider: str, reason: str | None = None):
        message = f"Provider {provider} no longer resolves"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(provider, message)


class CircuitBreakerOpenError(ProviderError):
    code = "CIRCUIT_BREAKER_OPEN"
    status_code = 503

    def __init__(self, provider: str):
        super().__init__(provider, f"Circuit breaker is open for {provider}. Too many failures.")


@dataclass(frozen=True, slots=True)
class ProviderFailure:
    provider_id: str
    error: InferenceError


class AllProvidersFailedError(InferenceError):
    code = "ALL_PROVIDERS_FAILED"

    def __init__(self, failures: list[ProviderFailure] | tuple[ProviderFailure, ...]):
        self.failures = tuple(failures)
        super().__init__(
            f"All {len(self.failures)} provider attempts failed",
            details={
                "attempts": len(self.failures),
                "providers": [f.provider_id for f in self.failures],
            },
        )

    @property
    def attempts(self) -> int:
        return len(self.failures)


def retry_after_hint(error: BaseException) -> float | None:
    """Server-suggested delay in seconds, if the error carries one."""
    if isinstance(error, RateLimitError) and error.retry_after is not None:
        return max(float(error.retry_after), 0.0)
    for pattern in _RETRY_HINT_PATTERNS:
        match = pattern.search(str(error))
        if match:
            seconds = float(match.group(1))
            if seconds > 0:
                return seconds
    return None


def error_for_status(
    provider: str,
    status_code: int,
    message: str = "",
    *,
    retry_after: float | None = None,
) -> ProviderError:
    """Map an HTTP status returned by a provider to the taxonomy."""
    message = message or f"HTTP {status_code}"
    if status_code in (401, 403):
        return APIResponseError(provider, status_code, f"Access denied: {message}")
    if status_code == 404:
        return StaleProviderError(provider, message)
    if status_code == 429:
        return RateLimitError(provider, retry_after=retry_after, reason=message)
    if status_code == 503:
        return ProviderUnavailableError(provider, message)
    return APIResponseError(provider, status_code, message)


def classify_error(error: Exception, provider: str) -> InferenceError:
    """Normalize any exception raised by a provider call."""
    if isinstance(error, InferenceError):
        return error
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ProviderTimeoutError(provider)
    if isinstance(error, httpx.HTTPStatusError):
        return error_for_status(provider, error.response.status_code, str(error))
    if isinstance(error, (httpx.TransportError, OSError)):
        return ProviderUnavailableError(provider, str(error) or type(error).__name__)
    if isinstance(error, pydantic.ValidationError):
        return InvalidResponseError(provider, f"{error.error_count()} schema violation(s)")
    return ProviderError(provider, f"{type(error).__name__}: {error}")


def is_stale_failure(error: BaseException) -> bool:
    if isinstance(error, StaleProviderError):
        return True
    if isinstance(error, AllProvidersFailedError):
        return any(isinstance(f.error, StaleProviderError) for f in error.failures)
    return False
