from __future__ import annotations

from typing import Any, Awaitable, Callable

from vidcopilot.inference_core.models.interfaces import ProviderRole
from vidcopilot.providers.base import InferenceProvider

Invoker = Callable[[Any], Awaitable[Any]]
Probe = Callable[[], Awaitable[bool]]


class CallableProvider(InferenceProvider):
    """Provider backed by an in-process coroutine function (SDK wrappers, fakes)."""

    def __init__(
        self,
        name: str,
        model: str,
        invoker: Invoker,
        *,
        role: ProviderRole = ProviderRole.PRIMARY,
        probe: Probe | None = None,
    ):
        super().__init__(model=model, role=role, name=name)
        self._invoker = invoker
        self._probe = probe

    async def invoke(self, payload: Any) -> Any:
        return await self._invoker(payload)

    async def is_available(self) -> bool:
        if self._probe is None:
            return True
        return bool(await self._probe())
