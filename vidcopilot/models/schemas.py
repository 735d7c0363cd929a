from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from vidcopilot.inference_core.models.interfaces import Severity


class AnalysisIssue(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    severity: Severity
    title: str
    description: str = ""
    timestamp: float | None = None
    suggestion: str | None = None


class CategoryAnalysis(BaseModel):
    """Scored output of one analysis task (one category)."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    score: float = Field(alias="overallScore")
    issues: list[AnalysisIssue] = Field(default_factory=list)
    priority_actions: list[str] = Field(default_factory=list, alias="priorityActions")
