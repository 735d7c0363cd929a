from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from vidcopilot.inference_core.models.interfaces import RetryErrorType


class EventType(str, Enum):
    BATCH_STARTED = "batch_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    RETRY_SCHEDULED = "retry_scheduled"
    BATCH_COMPLETED = "batch_completed"


@dataclass
class ProgressUpdate:
    event: EventType
    percent: int
    message: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RetryNotice:
    """Emitted by the retry executor before it sleeps between attempts."""

    provider: str
    error_type: RetryErrorType
    attempt: int
    max_attempts: int
    delay: float
    message: str
