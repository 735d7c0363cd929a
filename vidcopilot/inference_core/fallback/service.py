from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Sequence

from vidcopilot.inference_core.breaker.service import CircuitBreakerRegistry
from vidcopilot.inference_core.errors import (
    AllProvidersFailedError,
    InferenceError,
    ProviderFailure,
    ValidationError,
    classify_error,
)
from vidcopilot.inference_core.models.interfaces import TaggedResult
from vidcopilot.inference_core.retry.service import RetryCallback, RetryExecutor, RetryPolicy
from vidcopilot.providers.base import InferenceProvider
from vidcopilot.services import logger as log_service

Parser = Callable[[Any], Any]


class FallbackChain:
    """Immutable, ordered providers for one capability, tried strictly in sequence."""

    def __init__(self, capability: str, providers: Sequence[InferenceProvider]):
        if not capability.strip():
            raise ValidationError("Fallback chain needs a capability name")
        if not providers:
            raise ValidationError(f"Fallback chain for {capability!r} has no providers")
        ids = [p.provider_id for p in providers]
        duplicates = sorted({pid for pid in ids if ids.count(pid) > 1})
        if duplicates:
            raise ValidationError(
                f"Fallback chain for {capability!r} lists providers more than once: {duplicates}"
            )
        self.capability = capability.strip()
        self._providers = tuple(providers)

    @property
    def providers(self) -> tuple[InferenceProvider, ...]:
        return self._providers

    def __len__(self) -> int:
        return len(self._providers)

    def __iter__(self):
        return iter(self._providers)

    def __repr__(self) -> str:
        return f"FallbackChain({self.capability!r}, {[p.provider_id for p in self._providers]})"

    async def invoke(
        self,
        payload: Any,
        *,
        executor: RetryExecutor,
        breakers: CircuitBreakerRegistry,
        policy: RetryPolicy,
        parse: Parser | None = None,
        on_retry: RetryCallback | None = None,
    ) -> TaggedResult:
        failures: list[ProviderFailure] = []

        for provider in self._providers:
            breaker = breakers.get(provider.provider_id)

            async def operation(provider: InferenceProvider = provider) -> Any:
                raw = await provider.invoke(payload)
                return parse(raw) if parse is not None else raw

            started = time.monotonic()
            try:
                value = await executor.execute(operation, policy, breaker, on_retry=on_retry)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error: InferenceError = classify_error(exc, provider.provider_id)
                failures.append(ProviderFailure(provider_id=provider.provider_id, error=error))
                log_service.log_provider_call(
                    provider=provider.name,
                    model=provider.model,
                    strategy=provider.role.value,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    status="failed",
                    error=str(error),
                )
                continue

            latency_ms = int((time.monotonic() - started) * 1000)
            log_service.log_provider_call(
                provider=provider.name,
                model=provider.model,
                strategy=provider.role.value,
                duration_ms=latency_ms,
            )
            if failures:
                log_service.log_event(
                    "fallback_served",
                    f"{self.capability} served by {provider.provider_id} after {len(failures)} failure(s)",
                    failed_providers=[f.provider_id for f in failures],
                )
            return TaggedResult(
                value=value,
                provider=provider.name,
                model=provider.model,
                strategy=provider.role,
                latency_ms=latency_ms,
            )

        raise AllProvidersFailedError(failures)
