from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from vidcopilot.config import Settings
from vidcopilot.inference_core.breaker.service import CircuitBreaker
from vidcopilot.inference_core.errors import (
    APIResponseError,
    CircuitBreakerOpenError,
    GenerationFailedError,
    InferenceError,
    InvalidResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
    classify_error,
    retry_after_hint,
)
from vidcopilot.inference_core.models.interfaces import RetryErrorType
from vidcopilot.models.events import RetryNotice
from vidcopilot.services import streaming

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]
RetryCallback = Callable[[RetryNotice], None]


def default_retryable(error: InferenceError) -> bool:
    return bool(error.retryable)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0
    max_invalid_response_retries: int = 1
    attempt_timeout: float | None = None
    retryable_classifier: Callable[[InferenceError], bool] = field(default=default_retryable)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        timeout = float(settings.provider_attempt_timeout_seconds)
        return cls(
            max_attempts=max(int(settings.retry_max_attempts), 1),
            base_delay=max(float(settings.retry_base_delay_seconds), 0.0),
            backoff_multiplier=max(float(settings.retry_backoff_multiplier), 1.0),
            max_delay=max(float(settings.retry_max_delay_seconds), 0.0),
            max_invalid_response_retries=max(int(settings.retry_max_invalid_response_retries), 0),
            attempt_timeout=timeout if timeout > 0 else None,
        )


def compute_backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay before retrying after 0-indexed ``attempt``."""
    return min(policy.base_delay * policy.backoff_multiplier**attempt, policy.max_delay)


def retry_error_type(error: InferenceError) -> RetryErrorType:
    text = str(error).lower()
    if "quota" in text or "resource_exhausted" in text:
        return "quota"
    if isinstance(error, RateLimitError):
        return "rate_limit"
    if isinstance(error, ProviderTimeoutError):
        return "timeout"
    if isinstance(error, ProviderUnavailableError):
        return "server_error"
    if isinstance(error, APIResponseError) and error.status_code >= 500:
        return "server_error"
    return "unknown"


class RetryExecutor:
    """Runs one provider operation with bounded retries, guarded by its breaker.

    Cancellation is not a failure: ``asyncio.CancelledError`` propagates out of
    the operation or the backoff sleep without touching the breaker.
    """

    def __init__(self, *, sleep: Sleep = asyncio.sleep):
        self._sleep = sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        breaker: CircuitBreaker,
        *,
        on_retry: RetryCallback | None = None,
    ) -> T:
        provider_id = breaker.provider_id
        invalid_retries = 0

        for attempt in range(policy.max_attempts):
            if breaker.is_open():
                raise CircuitBreakerOpenError(provider_id)

            try:
                result = await self._run_attempt(operation, policy, provider_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = classify_error(exc, provider_id)
                breaker.record_failure()

                retryable = policy.retryable_classifier(error)
                if retryable and isinstance(error, (InvalidResponseError, GenerationFailedError)):
                    invalid_retries += 1
                    retryable = invalid_retries <= policy.max_invalid_response_retries

                is_last = attempt >= policy.max_attempts - 1
                if not retryable or is_last:
                    logger.warning(
                        f"Giving up on {provider_id} after attempt {attempt + 1}/"
                        f"{policy.max_attempts}: {error}"
                    )
                    if error is exc:
                        raise
                    raise error from exc

                delay = self._delay_for(policy, attempt, error)
                error_type = retry_error_type(error)
                logger.warning(
                    f"Retrying {provider_id} in {delay:.2f}s "
                    f"(attempt {attempt + 1}/{policy.max_attempts}, {error_type}): {error}"
                )
                if on_retry is not None:
                    on_retry(
                        RetryNotice(
                            provider=provider_id,
                            error_type=error_type,
                            attempt=attempt + 1,
                            max_attempts=policy.max_attempts,
                            delay=delay,
                            message=streaming.retry_message(
                                error_type, delay, attempt + 1, policy.max_attempts
                            ),
                        )
                    )
                await self._sleep(delay)
                continue

            breaker.record_success()
            return result

        raise AssertionError("unreachable: retry loop exited without result")

    async def _run_attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        provider_id: str,
    ) -> T:
        if policy.attempt_timeout is None:
            return await operation()
        started = time.monotonic()
        try:
            return await asyncio.wait_for(operation(), timeout=policy.attempt_timeout)
        except asyncio.TimeoutError as exc:
            elapsed = time.monotonic() - started
            raise ProviderTimeoutError(provider_id, round(elapsed, 3)) from exc

    @staticmethod
    def _delay_for(policy: RetryPolicy, attempt: int, error: InferenceError) -> float:
        hinted = retry_after_hint(error)
        if hinted is not None:
            return min(hinted, policy.max_delay)
        return compute_backoff_delay(policy, attempt)
