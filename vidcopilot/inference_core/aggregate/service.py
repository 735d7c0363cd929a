from __future__ import annotations

from typing import Any, Mapping

import pydantic
from loguru import logger

from vidcopilot.inference_core.errors import ValidationError
from vidcopilot.inference_core.models.interfaces import AggregateResult, TaggedResult
from vidcopilot.models.schemas import AnalysisIssue, CategoryAnalysis

SEVERITY_ORDER: dict[str, int] = {"critical": 0, "major": 1, "minor": 2, "suggestion": 3}


def _as_analysis(task_id: str, result: Any) -> CategoryAnalysis:
    if isinstance(result, TaggedResult):
        result = result.value
    if isinstance(result, CategoryAnalysis):
        return result
    try:
        return CategoryAnalysis.model_validate(result)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            f"Result for task {task_id!r} is not a category analysis",
            details={"task_id": task_id, "errors": exc.error_count()},
        ) from exc


def dedupe_actions(actions: list[str], cap: int) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for action in actions:
        if action in seen:
            continue
        seen.add(action)
        unique.append(action)
    return unique[:cap]


def aggregate(per_task_results: Mapping[str, Any], *, top_actions_cap: int = 5) -> AggregateResult:
    """Fold per-task analyses into one report.

    Failed tasks (``None``) are kept in ``per_task_results`` but excluded from
    the score average. Issues are stably sorted by severity; actions keep their
    first-seen order.
    """
    analyses: list[CategoryAnalysis] = []
    normalized: dict[str, Any] = {}
    for task_id, result in per_task_results.items():
        if result is None:
            normalized[task_id] = None
            continue
        analysis = _as_analysis(task_id, result)
        normalized[task_id] = analysis
        analyses.append(analysis)

    overall = sum(a.score for a in analyses) / len(analyses) if analyses else 0.0

    issues: list[AnalysisIssue] = [issue for a in analyses for issue in a.issues]
    # sorted() is stable, so equal severities keep their input order.
    issues = sorted(issues, key=lambda issue: SEVERITY_ORDER[issue.severity])

    actions = dedupe_actions([action for a in analyses for action in a.priority_actions], top_actions_cap)

    logger.debug(
        f"Aggregated {len(analyses)}/{len(per_task_results)} results: "
        f"score={overall:.3f}, issues={len(issues)}, actions={len(actions)}"
    )
    return AggregateResult(
        per_task_results=normalized,
        overall_score=overall,
        issues=tuple(issues),
        top_actions=tuple(actions),
        completed=len(analyses),
        total=len(per_task_results),
    )
