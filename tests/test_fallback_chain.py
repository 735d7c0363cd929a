from __future__ import annotations

import asyncio

import pytest

from vidcopilot.inference_core.breaker.service import CircuitBreakerRegistry
from vidcopilot.inference_core.errors import (
    AllProvidersFailedError,
    CircuitBreakerOpenError,
    InvalidResponseError,
    ProviderUnavailableError,
    ValidationError,
)
from vidcopilot.inference_core.fallback.service import FallbackChain
from vidcopilot.inference_core.models.interfaces import ProviderRole
from vidcopilot.inference_core.retry.service import RetryExecutor, RetryPolicy
from vidcopilot.models.schemas import CategoryAnalysis
from vidcopilot.providers.callable_provider import CallableProvider
from vidcopilot.providers.catalog import ProviderCatalog


async def _no_sleep(_delay: float) -> None:
    return None


class CountingInvoker:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, payload):
        self.calls += 1
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _invoke_kwargs(threshold: int = 5, max_attempts: int = 1):
    return {
        "executor": RetryExecutor(sleep=_no_sleep),
        "breakers": CircuitBreakerRegistry(failure_threshold=threshold, reset_timeout=60),
        "policy": RetryPolicy(max_attempts=max_attempts),
    }


@pytest.mark.asyncio
async def test_primary_success_is_tagged_primary():
    primary = CallableProvider("hf", "thumbnail-lora", CountingInvoker({"image": "a.png"}))
    fallback = CallableProvider(
        "gemini", "imagen", CountingInvoker({"image": "b.png"}), role=ProviderRole.FALLBACK
    )
    chain = FallbackChain("image_generation", [primary, fallback])

    result = await chain.invoke({"prompt": "x"}, **_invoke_kwargs())

    assert result.value == {"image": "a.png"}
    assert result.provider == "hf"
    assert result.model == "thumbnail-lora"
    assert result.strategy is ProviderRole.PRIMARY
    assert result.cache_hit is False
    assert fallback._invoker.calls == 0


@pytest.mark.asyncio
async def test_open_breaker_skips_provider_and_chain_moves_on():
    a = CountingInvoker(ProviderUnavailableError("hf:lora"))
    b = CountingInvoker("from-b")
    chain = FallbackChain(
        "image_generation",
        [
            CallableProvider("hf", "lora", a),
            CallableProvider("gemini", "imagen", b, role=ProviderRole.FALLBACK),
        ],
    )
    kwargs = _invoke_kwargs(threshold=5)

    for _ in range(5):
        result = await chain.invoke({}, **kwargs)
        assert result.strategy is ProviderRole.FALLBACK
    assert a.calls == 5
    assert kwargs["breakers"].is_open("hf:lora") is True

    result = await chain.invoke({}, **kwargs)
    assert a.calls == 5
    assert b.calls == 6
    assert result.value == "from-b"
    assert result.provider == "gemini"


@pytest.mark.asyncio
async def test_open_breaker_failure_is_reported_per_provider():
    a = CountingInvoker(ProviderUnavailableError("hf:lora"))
    chain = FallbackChain("image_generation", [CallableProvider("hf", "lora", a)])
    kwargs = _invoke_kwargs(threshold=1)

    with pytest.raises(AllProvidersFailedError):
        await chain.invoke({}, **kwargs)
    with pytest.raises(AllProvidersFailedError) as exc_info:
        await chain.invoke({}, **kwargs)

    assert a.calls == 1
    assert isinstance(exc_info.value.failures[0].error, CircuitBreakerOpenError)


@pytest.mark.asyncio
async def test_all_providers_failing_raises_with_details():
    chain = FallbackChain(
        "text_analysis",
        [
            CallableProvider("gemini", "flash", CountingInvoker(ProviderUnavailableError("gemini:flash"))),
            CallableProvider("gemini", "pro", CountingInvoker(RuntimeError("boom")), role=ProviderRole.FALLBACK),
        ],
    )

    with pytest.raises(AllProvidersFailedError) as exc_info:
        await chain.invoke({}, **_invoke_kwargs())

    error = exc_info.value
    assert error.attempts == 2
    assert [f.provider_id for f in error.failures] == ["gemini:flash", "gemini:pro"]
    assert isinstance(error.failures[0].error, ProviderUnavailableError)
    assert "RuntimeError: boom" in str(error.failures[1].error)


@pytest.mark.asyncio
async def test_fallback_is_strictly_sequential():
    in_flight = 0
    peak = 0

    async def slow_failure(_payload):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        in_flight -= 1
        raise ProviderUnavailableError("x")

    chain = FallbackChain(
        "text_analysis",
        [CallableProvider("p", str(i), slow_failure) for i in range(4)],
    )
    with pytest.raises(AllProvidersFailedError):
        await chain.invoke({}, **_invoke_kwargs())
    assert peak == 1


@pytest.mark.asyncio
async def test_parse_failure_is_retried_then_falls_back():
    bad = CountingInvoker({"unexpected": True})
    good = CountingInvoker({"overallScore": 0.9, "issues": [], "priorityActions": ["Trim intro"]})
    chain = FallbackChain(
        "text_analysis",
        [
            CallableProvider("gemini", "flash", bad),
            CallableProvider("gemini", "pro", good, role=ProviderRole.FALLBACK),
        ],
    )

    result = await chain.invoke(
        {}, parse=CategoryAnalysis.model_validate, **_invoke_kwargs(max_attempts=3)
    )

    assert bad.calls == 2
    assert isinstance(result.value, CategoryAnalysis)
    assert result.value.priority_actions == ["Trim intro"]


def test_chain_validation():
    provider = CallableProvider("p", "m", CountingInvoker(None))
    with pytest.raises(ValidationError):
        FallbackChain("text_analysis", [])
    with pytest.raises(ValidationError):
        FallbackChain("  ", [provider])
    with pytest.raises(ValidationError):
        FallbackChain("text_analysis", [provider, CallableProvider("p", "m", CountingInvoker(None))])


def test_invalid_response_error_is_retryable_class():
    assert InvalidResponseError("p").retryable is True


@pytest.mark.asyncio
async def test_catalog_refresh_drops_unavailable_providers():
    async def down():
        return False

    async def up():
        return True

    stale = CallableProvider("hf", "old-lora", CountingInvoker(None), probe=down)
    healthy = CallableProvider("gemini", "imagen", CountingInvoker(None), probe=up, role=ProviderRole.FALLBACK)
    catalog = ProviderCatalog()
    catalog.register("image_generation", [stale, healthy])

    chain = await catalog.refresh("image_generation")
    assert chain.providers == (healthy,)
    assert catalog.chain("image_generation") is chain


@pytest.mark.asyncio
async def test_catalog_refresh_keeps_configured_chain_when_nothing_answers():
    async def down():
        return False

    providers = [
        CallableProvider("a", "1", CountingInvoker(None), probe=down),
        CallableProvider("b", "2", CountingInvoker(None), probe=down),
    ]
    catalog = ProviderCatalog()
    catalog.register("text_analysis", providers)

    chain = await catalog.refresh("text_analysis")
    assert chain.providers == tuple(providers)


def test_catalog_unknown_capability():
    with pytest.raises(ValidationError):
        ProviderCatalog().chain("video_upload")
