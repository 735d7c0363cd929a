from __future__ import annotations

from typing import Any

from vidcopilot.inference_core.models.interfaces import ProviderRole


class InferenceProvider:
    """One remote model endpoint that can serve a capability.

    Subclasses implement ``invoke``; the payload and raw result are opaque to
    the orchestration layer.
    """

    name: str = "base"

    def __init__(self, *, model: str, role: ProviderRole = ProviderRole.PRIMARY, name: str | None = None):
        if name is not None:
            self.name = name
        if not model.strip():
            raise ValueError("model identifier must not be empty")
        self.model = model.strip()
        self.role = ProviderRole(role)

    @property
    def provider_id(self) -> str:
        return f"{self.name}:{self.model}"

    async def invoke(self, payload: Any) -> Any:
        raise NotImplementedError(f"{type(self).__name__} does not implement invoke()")

    async def is_available(self) -> bool:
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.provider_id!r}, role={self.role.value})"
