"""Single entry point wiring breakers, cache, retries, fallback and scheduling."""

from __future__ import annotations

import asyncio
import dataclasses
import time
import weakref
from typing import Any, Awaitable, Callable, Mapping, Sequence

from loguru import logger

from vidcopilot.config import Settings, settings as default_settings
from vidcopilot.inference_core.aggregate.service import aggregate
from vidcopilot.inference_core.breaker.service import CircuitBreakerRegistry
from vidcopilot.inference_core.cache.service import ResultCache, fingerprint as make_fingerprint
from vidcopilot.inference_core.fallback.service import FallbackChain, Parser
from vidcopilot.inference_core.models.interfaces import (
    AggregateResult,
    BatchPlan,
    ConcurrencyTier,
    ProgressCallback,
    ProviderStatus,
    TaggedResult,
    Task,
)
from vidcopilot.inference_core.retry.service import RetryCallback, RetryExecutor, RetryPolicy
from vidcopilot.inference_core.scheduler.service import TieredScheduler, plan_for_tier, retry_listener
from vidcopilot.models.schemas import CategoryAnalysis
from vidcopilot.providers.catalog import ProviderCatalog

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]
Fingerprint = str | Mapping[str, Any]


class InferenceOrchestrator:
    """Explicitly constructed owner of all cross-call state.

    Breaker state and cached results live here for the lifetime of the
    instance; everything else is created per call or per batch.
    """

    def __init__(
        self,
        *,
        catalog: ProviderCatalog,
        breakers: CircuitBreakerRegistry | None = None,
        cache: ResultCache[TaggedResult] | None = None,
        executor: RetryExecutor | None = None,
        policy: RetryPolicy | None = None,
        scheduler: TieredScheduler | None = None,
        settings: Settings = default_settings,
    ):
        self.settings = settings
        self.catalog = catalog
        self.breakers = breakers or CircuitBreakerRegistry.from_settings(settings)
        self.cache = cache or ResultCache.from_settings(settings)
        self.executor = executor or RetryExecutor()
        self.policy = policy or RetryPolicy.from_settings(settings)
        self.scheduler = scheduler or TieredScheduler()
        self._inflight: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @classmethod
    def from_settings(
        cls,
        catalog: ProviderCatalog,
        settings: Settings = default_settings,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> InferenceOrchestrator:
        return cls(
            catalog=catalog,
            breakers=CircuitBreakerRegistry.from_settings(settings, clock=clock),
            cache=ResultCache.from_settings(settings, clock=clock),
            executor=RetryExecutor(sleep=sleep),
            policy=RetryPolicy.from_settings(settings),
            scheduler=TieredScheduler(sleep=sleep),
            settings=settings,
        )

    async def invoke(
        self,
        capability: str,
        payload: Any,
        *,
        fingerprint: Fingerprint | None = None,
        parse: Parser | None = None,
        ttl: float | None = None,
        on_retry: RetryCallback | None = None,
    ) -> TaggedResult:
        """Serve one request through the capability's fallback chain.

        When ``fingerprint`` is given the result is cached, and concurrent
        identical requests share a single provider call.
        """
        chain = self.catalog.chain(capability)
        on_retry = on_retry or retry_listener.get()
        if fingerprint is None:
            return await self._call_chain(chain, payload, parse, on_retry)

        key = self._cache_key(capability, fingerprint)
        started = time.monotonic()
        cached = self.cache.get(key)
        if cached is not None:
            return self._served_from_cache(cached, started)

        lock = self._inflight.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._inflight[key] = lock
        async with lock:
            # Another caller may have filled the entry while we waited.
            cached = self.cache.peek(key)
            if cached is not None:
                return self._served_from_cache(cached, started)
            result = await self._call_chain(chain, payload, parse, on_retry)
            self.cache.set(key, result, ttl)
            return result

    def task(
        self,
        task_id: str,
        capability: str,
        payload: Any,
        *,
        fingerprint: Fingerprint | None = None,
        parse: Parser | None = None,
    ) -> Task:
        async def run() -> Any:
            result = await self.invoke(capability, payload, fingerprint=fingerprint, parse=parse)
            return result.value

        return Task(id=task_id, invoke=run, capability=capability)

    def analysis_task(
        self,
        task_id: str,
        capability: str,
        payload: Any,
        *,
        fingerprint: Fingerprint | None = None,
    ) -> Task:
        """Task whose provider output must parse as a ``CategoryAnalysis``."""
        return self.task(
            task_id,
            capability,
            payload,
            fingerprint=fingerprint,
            parse=CategoryAnalysis.model_validate,
        )

    async def run_batch(
        self,
        tasks: Sequence[Task],
        tier: ConcurrencyTier | str | BatchPlan | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        plan = plan_for_tier(tier if tier is not None else self.settings.default_tier, self.settings)
        return await self.scheduler.run_batch(tasks, plan, on_progress, on_stale=self._refresh_for)

    async def analyze(
        self,
        tasks: Sequence[Task],
        tier: ConcurrencyTier | str | BatchPlan | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AggregateResult:
        results = await self.run_batch(tasks, tier, on_progress)
        return aggregate(results, top_actions_cap=self.settings.top_actions_cap)

    def provider_status(self) -> list[ProviderStatus]:
        statuses: list[ProviderStatus] = []
        for capability in self.catalog.capabilities:
            for provider in self.catalog.chain(capability):
                breaker = self.breakers.get(provider.provider_id)
                statuses.append(
                    ProviderStatus(
                        provider_id=provider.provider_id,
                        capability=capability,
                        role=provider.role,
                        circuit_state=breaker.state,
                        consecutive_failures=breaker.consecutive_failures,
                        total_requests=breaker.total_requests,
                        failed_requests=breaker.failed_requests,
                    )
                )
        return statuses

    def reset(self) -> None:
        self.breakers.reset_all()
        self.cache.clear()
        logger.info("Orchestrator state reset (breakers and cache)")

    async def _call_chain(
        self,
        chain: FallbackChain,
        payload: Any,
        parse: Parser | None,
        on_retry: RetryCallback | None,
    ) -> TaggedResult:
        return await chain.invoke(
            payload,
            executor=self.executor,
            breakers=self.breakers,
            policy=self.policy,
            parse=parse,
            on_retry=on_retry,
        )

    async def _refresh_for(self, task: Task) -> None:
        if task.capability is None:
            return
        await self.catalog.refresh(task.capability)

    @staticmethod
    def _cache_key(capability: str, fingerprint: Fingerprint) -> str:
        if isinstance(fingerprint, str):
            return f"{capability}|{fingerprint}"
        return make_fingerprint({"capability": capability, **fingerprint})

    @staticmethod
    def _served_from_cache(cached: TaggedResult, started: float) -> TaggedResult:
        return dataclasses.replace(
            cached,
            cache_hit=True,
            latency_ms=int((time.monotonic() - started) * 1000),
        )
