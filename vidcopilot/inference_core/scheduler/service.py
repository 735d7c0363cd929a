from __future__ import annotations

import asyncio
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Sequence
from uuid import uuid4

from loguru import logger

from vidcopilot.config import Settings
from vidcopilot.inference_core.errors import ValidationError, is_stale_failure
from vidcopilot.inference_core.models.interfaces import (
    BatchOutcome,
    BatchPlan,
    ConcurrencyTier,
    ProgressCallback,
    Task,
)
from vidcopilot.inference_core.retry.service import RetryCallback
from vidcopilot.models.events import ProgressUpdate, RetryNotice
from vidcopilot.services import logger as log_service
from vidcopilot.services import streaming

Sleep = Callable[[float], Awaitable[Any]]
StaleHook = Callable[[Task], Awaitable[Any]]

# Set per running task so provider calls made inside it can report retries.
retry_listener: ContextVar[RetryCallback | None] = ContextVar("retry_listener", default=None)


def plan_for_tier(tier: ConcurrencyTier | str | BatchPlan, settings: Settings) -> BatchPlan:
    """Map the user-facing tier onto a concrete plan."""
    if isinstance(tier, BatchPlan):
        return validate_plan(tier)
    if not isinstance(tier, ConcurrencyTier):
        try:
            tier = ConcurrencyTier(str(tier).strip().lower())
        except ValueError as exc:
            options = ", ".join(t.value for t in ConcurrencyTier)
            raise ValidationError(f"Unsupported tier {tier!r}. Use one of: {options}.") from exc

    if tier is ConcurrencyTier.CONSERVATIVE:
        plan = BatchPlan(1, float(settings.tier_conservative_delay_seconds))
    elif tier is ConcurrencyTier.FAST:
        plan = BatchPlan(int(settings.tier_fast_max_parallel), float(settings.tier_fast_delay_seconds))
    else:
        plan = BatchPlan(
            int(settings.tier_maximum_max_parallel), float(settings.tier_maximum_delay_seconds)
        )
    return validate_plan(plan)


def validate_plan(plan: BatchPlan) -> BatchPlan:
    if plan.max_parallel < 1:
        raise ValidationError(f"max_parallel must be >= 1, got {plan.max_parallel}")
    if plan.inter_batch_delay < 0:
        raise ValidationError(f"inter_batch_delay must be >= 0, got {plan.inter_batch_delay}")
    return plan


def partition(tasks: Sequence[Task], size: int) -> list[list[Task]]:
    return [list(tasks[i : i + size]) for i in range(0, len(tasks), size)]


class TieredScheduler:
    """Runs independent tasks in consecutive groups of at most ``max_parallel``.

    A group only starts once every task of the previous group has finished.
    Task failures are recorded as ``None`` and never cancel siblings; a caller
    cancelling the batch cancels everything in flight.
    """

    def __init__(self, *, sleep: Sleep = asyncio.sleep):
        self._sleep = sleep

    async def run_batch(
        self,
        tasks: Sequence[Task],
        plan: BatchPlan,
        on_progress: ProgressCallback | None = None,
        *,
        on_stale: StaleHook | None = None,
    ) -> dict[str, Any]:
        outcome = await self.run(tasks, plan, on_progress, on_stale=on_stale)
        return outcome.results

    async def run(
        self,
        tasks: Sequence[Task],
        plan: BatchPlan,
        on_progress: ProgressCallback | None = None,
        *,
        on_stale: StaleHook | None = None,
    ) -> BatchOutcome:
        _validate_tasks(tasks)
        validate_plan(plan)

        batch_id = uuid4().hex[:12]
        total = len(tasks)
        groups = partition(tasks, plan.max_parallel)
        outcome = BatchOutcome(groups=[[t.id for t in group] for group in groups])
        completed = 0

        def emit(update: ProgressUpdate) -> None:
            if on_progress is None:
                return
            try:
                on_progress(update.percent, update.message)
            except Exception as exc:
                logger.warning(f"Progress callback failed for batch {batch_id}: {exc}")

        def forward_retry(notice: RetryNotice) -> None:
            emit(streaming.retry_scheduled(notice, completed, total))

        async def run_one(task: Task) -> None:
            nonlocal completed
            token = retry_listener.set(forward_retry)
            try:
                value = await self._invoke(task, on_stale)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                outcome.results[task.id] = None
                outcome.failures[task.id] = exc
                completed += 1
                log_service.log_batch_step(
                    batch_id, "task", "failed", {"task_id": task.id, "error": str(exc)}
                )
                emit(streaming.task_failed(task.id, completed, total, exc))
                return
            finally:
                retry_listener.reset(token)
            outcome.results[task.id] = value
            completed += 1
            emit(streaming.task_completed(task.id, completed, total))

        log_service.log_batch_step(
            batch_id,
            "batch",
            "started",
            {"total": total, "mode": plan.label, "groups": len(groups)},
        )
        emit(streaming.batch_started(total, plan))

        for index, group in enumerate(groups):
            logger.debug(
                f"Batch {batch_id}: group {index + 1}/{len(groups)} -> {[t.id for t in group]}"
            )
            if len(group) == 1:
                await run_one(group[0])
            else:
                await asyncio.gather(*(run_one(task) for task in group))
            if plan.inter_batch_delay > 0 and index < len(groups) - 1:
                await self._sleep(plan.inter_batch_delay)

        succeeded = total - len(outcome.failures)
        log_service.log_batch_step(
            batch_id,
            "batch",
            "completed",
            {"total": total, "succeeded": succeeded, "failed": sorted(outcome.failures)},
        )
        emit(streaming.batch_completed(succeeded, total))
        # Report in submission order regardless of completion order.
        outcome.results = {task.id: outcome.results.get(task.id) for task in tasks}
        return outcome

    async def _invoke(self, task: Task, on_stale: StaleHook | None) -> Any:
        try:
            return await task.invoke()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if on_stale is None or not is_stale_failure(exc):
                raise
            logger.info(f"Task {task.id} hit a stale provider, refreshing and retrying once")
            await on_stale(task)
            return await task.invoke()


def _validate_tasks(tasks: Sequence[Task]) -> None:
    seen: set[str] = set()
    for task in tasks:
        if not isinstance(task.id, str) or not task.id.strip():
            raise ValidationError("Every task needs a non-empty id")
        if task.id in seen:
            raise ValidationError(f"Duplicate task id {task.id!r} in batch")
        seen.add(task.id)
