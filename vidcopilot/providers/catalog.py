from __future__ import annotations

from typing import Sequence

from loguru import logger

from vidcopilot.inference_core.errors import ValidationError
from vidcopilot.inference_core.fallback.service import FallbackChain
from vidcopilot.providers.base import InferenceProvider


class ProviderCatalog:
    """Configured providers per capability and the chain currently in use."""

    def __init__(self) -> None:
        self._configured: dict[str, tuple[InferenceProvider, ...]] = {}
        self._active: dict[str, FallbackChain] = {}

    def register(self, capability: str, providers: Sequence[InferenceProvider]) -> FallbackChain:
        chain = FallbackChain(capability, providers)
        self._configured[chain.capability] = chain.providers
        self._active[chain.capability] = chain
        return chain

    @property
    def capabilities(self) -> list[str]:
        return list(self._configured)

    def chain(self, capability: str) -> FallbackChain:
        chain = self._active.get(capability)
        if chain is None:
            raise ValidationError(
                f"No providers registered for capability {capability!r}",
                details={"known": self.capabilities},
            )
        return chain

    async def refresh(self, capability: str) -> FallbackChain:
        """Re-probe every configured provider and rebuild the active chain.

        Providers that answer the probe keep their configured order. When none
        answers, the full configured chain is kept so callers still get
        per-provider failure details.
        """
        configured = self._configured.get(capability)
        if configured is None:
            raise ValidationError(f"No providers registered for capability {capability!r}")

        healthy: list[InferenceProvider] = []
        for provider in configured:
            if await provider.is_available():
                healthy.append(provider)
            else:
                logger.warning(f"Provider {provider.provider_id} failed availability probe")

        chain = FallbackChain(capability, healthy or configured)
        self._active[capability] = chain
        logger.info(f"Refreshed {capability} chain: {[p.provider_id for p in chain]}")
        return chain
