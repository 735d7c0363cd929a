from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Literal, Mapping


class ProviderRole(str, Enum):
    PRIMARY = "PRIMARY"
    FALLBACK = "FALLBACK"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class ConcurrencyTier(str, Enum):
    """User-facing speed choice, mapped onto a BatchPlan."""

    CONSERVATIVE = "conservative"
    FAST = "fast"
    MAXIMUM = "maximum"


Severity = Literal["critical", "major", "minor", "suggestion"]
RetryErrorType = Literal["quota", "rate_limit", "timeout", "server_error", "unknown"]

ProgressCallback = Callable[[int, str], None]


@dataclass(slots=True)
class CircuitBreakerState:
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: float | None = None


@dataclass(frozen=True, slots=True)
class BatchPlan:
    """How many tasks may be in flight at once, and the pause between groups."""

    max_parallel: int = 1
    inter_batch_delay: float = 0.0

    @property
    def sequential(self) -> bool:
        return self.max_parallel == 1

    @property
    def label(self) -> str:
        return "sequential" if self.sequential else f"parallel (max {self.max_parallel})"


SEQUENTIAL = BatchPlan(max_parallel=1)


def parallel(n: int, inter_batch_delay: float = 0.0) -> BatchPlan:
    return BatchPlan(max_parallel=n, inter_batch_delay=inter_batch_delay)


@dataclass(frozen=True, slots=True)
class Task:
    """One independent unit of work in a batch, identified by ``id``."""

    id: str
    invoke: Callable[[], Awaitable[Any]]
    capability: str | None = None


@dataclass(frozen=True, slots=True)
class TaggedResult:
    value: Any
    provider: str
    model: str
    strategy: ProviderRole
    latency_ms: int
    cache_hit: bool = False


@dataclass(frozen=True, slots=True)
class ProviderStatus:
    provider_id: str
    capability: str
    role: ProviderRole
    circuit_state: CircuitState
    consecutive_failures: int
    total_requests: int
    failed_requests: int


@dataclass(frozen=True, slots=True)
class AggregateResult:
    per_task_results: Mapping[str, Any]
    overall_score: float
    issues: tuple[Any, ...]
    top_actions: tuple[str, ...]
    completed: int
    total: int

    def __post_init__(self) -> None:
        if not isinstance(self.per_task_results, MappingProxyType):
            object.__setattr__(
                self, "per_task_results", MappingProxyType(dict(self.per_task_results))
            )

    @property
    def failed_tasks(self) -> list[str]:
        return [task_id for task_id, result in self.per_task_results.items() if result is None]


@dataclass(slots=True)
class BatchOutcome:
    results: dict[str, Any] = field(default_factory=dict)
    failures: dict[str, BaseException] = field(default_factory=dict)
    groups: list[list[str]] = field(default_factory=list)
