from __future__ import annotations

import threading
import time
from typing import Any, Callable

from loguru import logger

from vidcopilot.config import Settings
from vidcopilot.inference_core.models.interfaces import CircuitBreakerState, CircuitState

Clock = Callable[[], float]


class CircuitBreaker:
    """Consecutive-failure gate for a single provider.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures. While OPEN,
    ``is_open`` is true until ``reset_timeout`` seconds have elapsed; the next
    check then moves to HALF_OPEN and lets a probe through. A successful probe
    closes the circuit, a failed one re-opens it with a fresh timer.
    """

    def __init__(
        self,
        provider_id: str,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.provider_id = provider_id
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitBreakerState()
        self._lock = threading.Lock()
        self.total_requests = 0
        self.failed_requests = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state.state

    @property
    def consecutive_failures(self) -> int:
        return self._state.consecutive_failures

    def is_open(self) -> bool:
        with self._lock:
            self._maybe_half_open()
            return self._state.state is CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            self.total_requests += 1
            if self._state.state is not CircuitState.CLOSED:
                logger.info(f"Circuit closed for {self.provider_id}")
            self._state = CircuitBreakerState()

    def record_failure(self) -> None:
        with self._lock:
            self.total_requests += 1
            self.failed_requests += 1
            state = self._state
            if state.state is CircuitState.HALF_OPEN:
                state.consecutive_failures = self.failure_threshold
                self._open(state)
                return
            state.consecutive_failures += 1
            if state.state is CircuitState.CLOSED and state.consecutive_failures >= self.failure_threshold:
                self._open(state)

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitBreakerState()
            self.total_requests = 0
            self.failed_requests = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            return {
                "provider_id": self.provider_id,
                "state": self._state.state.value,
                "consecutive_failures": self._state.consecutive_failures,
                "opened_at": self._state.opened_at,
                "total_requests": self.total_requests,
                "failed_requests": self.failed_requests,
            }

    def _open(self, state: CircuitBreakerState) -> None:
        state.state = CircuitState.OPEN
        state.opened_at = self._clock()
        logger.warning(
            f"Circuit opened for {self.provider_id} after "
            f"{state.consecutive_failures} consecutive failures"
        )

    def _maybe_half_open(self) -> None:
        state = self._state
        if state.state is not CircuitState.OPEN or state.opened_at is None:
            return
        if self._clock() - state.opened_at >= self.reset_timeout:
            state.state = CircuitState.HALF_OPEN
            logger.info(f"Circuit half-open for {self.provider_id}, allowing a probe")


class CircuitBreakerRegistry:
    """One breaker per provider id, created on first use."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Clock = time.monotonic) -> CircuitBreakerRegistry:
        return cls(
            failure_threshold=max(int(settings.breaker_failure_threshold), 1),
            reset_timeout=max(float(settings.breaker_reset_timeout_seconds), 0.0),
            clock=clock,
        )

    def get(self, provider_id: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(provider_id)
            if breaker is None:
                breaker = CircuitBreaker(
                    provider_id,
                    failure_threshold=self.failure_threshold,
                    reset_timeout=self.reset_timeout,
                    clock=self._clock,
                )
                self._breakers[provider_id] = breaker
            return breaker

    def is_open(self, provider_id: str) -> bool:
        return self.get(provider_id).is_open()

    def record_success(self, provider_id: str) -> None:
        self.get(provider_id).record_success()

    def record_failure(self, provider_id: str) -> None:
        self.get(provider_id).record_failure()

    def reset(self, provider_id: str) -> None:
        self.get(provider_id).reset()

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()

    def stats(self) -> list[dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [breaker.stats() for breaker in breakers]
