from __future__ import annotations

import math
from typing import Any

from vidcopilot.inference_core.models.interfaces import BatchPlan, RetryErrorType
from vidcopilot.models.events import EventType, ProgressUpdate, RetryNotice


def percent_done(completed: int, total: int) -> int:
    if total <= 0:
        return 100
    return round(completed / total * 100)


def batch_started(total: int, plan: BatchPlan, **kwargs: Any) -> ProgressUpdate:
    return ProgressUpdate(
        event=EventType.BATCH_STARTED,
        percent=0,
        message=f"Analyzing {total} tasks {plan.label}...",
        data={"total": total, "max_parallel": plan.max_parallel, **kwargs},
    )


def task_completed(task_id: str, completed: int, total: int) -> ProgressUpdate:
    return ProgressUpdate(
        event=EventType.TASK_COMPLETED,
        percent=percent_done(completed, total),
        message=f"Completed {task_id} ({completed}/{total})",
        data={"task_id": task_id, "completed": completed, "total": total},
    )


def task_failed(task_id: str, completed: int, total: int, error: BaseException) -> ProgressUpdate:
    return ProgressUpdate(
        event=EventType.TASK_FAILED,
        percent=percent_done(completed, total),
        message=f"Failed {task_id} ({completed}/{total})",
        data={"task_id": task_id, "completed": completed, "total": total, "error": str(error)},
    )


def retry_scheduled(notice: RetryNotice, completed: int, total: int) -> ProgressUpdate:
    return ProgressUpdate(
        event=EventType.RETRY_SCHEDULED,
        percent=percent_done(completed, total),
        message=notice.message,
        data={
            "provider": notice.provider,
            "error_type": notice.error_type,
            "attempt": notice.attempt,
            "delay": notice.delay,
        },
    )


def batch_completed(succeeded: int, total: int) -> ProgressUpdate:
    return ProgressUpdate(
        event=EventType.BATCH_COMPLETED,
        percent=100,
        message=f"Analysis complete ({succeeded}/{total} succeeded)",
        data={"succeeded": succeeded, "total": total},
    )


def retry_message(error_type: RetryErrorType, delay: float, attempt: int, max_attempts: int) -> str:
    """Human readable notice for a pending retry. ``attempt`` is 1-based."""
    seconds = math.ceil(delay)
    left = max_attempts - attempt
    if error_type == "quota":
        return f"API quota exceeded. Waiting {seconds}s before retry ({left} attempts left)..."
    if error_type == "rate_limit":
        return f"Rate limited by API. Waiting {seconds}s before retry ({left} attempts left)..."
    if error_type == "timeout":
        return f"Request timed out. Retrying in {seconds}s ({left} attempts left)..."
    if error_type == "server_error":
        return f"Server temporarily unavailable. Retrying in {seconds}s ({left} attempts left)..."
    return f"Temporary error. Retrying in {seconds}s ({left} attempts left)..."
