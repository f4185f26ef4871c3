"""Pydantic records and request/response schemas for Compass.

Records (``*Record``) are the validated shapes crossing the data-access
boundary; the engine never reads ORM rows directly.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

Role = Literal["viewer", "editor", "owner"]
Risk = Literal["low", "medium", "high"]
Severity = Literal["low", "medium", "high"]
Source = Literal["rules", "generated"]
ObjectiveStatus = Literal["draft", "active", "closed"]

EXPLANATION_MAX = 280


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)


class ObjectiveRecord(_Record):
    id: str
    tenant_id: str
    statement: str
    start_date: date
    end_date: date
    status: ObjectiveStatus


class KeyResultRecord(_Record):
    id: str
    tenant_id: str
    objective_id: str
    title: str
    metric_name: str | None = None
    unit: str | None = None
    target_value: float | None = None
    current_value: float = 0.0


class CheckinRecord(_Record):
    id: str
    tenant_id: str
    key_result_id: str
    value: float
    comment: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None


class MembershipRecord(_Record):
    tenant_id: str
    objective_id: str
    user_id: str
    role: Role
    created_by: str | None = None


class InsightRecord(_Record):
    id: str
    tenant_id: str
    entity_id: str
    risk: Risk | None = None
    explanation_short: str
    explanation_long: str
    suggestion: str
    source: Source
    version: int
    computed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Generation provider output
# ---------------------------------------------------------------------------


class GeneratedObjectiveInsight(BaseModel):
    """Shape every generated objective insight must satisfy."""
    model_config = ConfigDict(populate_by_name=True)

    explanation_short: str = Field(alias="explanationShort", min_length=1, max_length=EXPLANATION_MAX)
    explanation_long: str = Field(alias="explanationLong")
    suggestion: str = Field(max_length=EXPLANATION_MAX)


class GeneratedKrInsight(GeneratedObjectiveInsight):
    risk: Risk

    @field_validator("risk", mode="before")
    @classmethod
    def normalize_risk(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class GeneratedIssue(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    severity: Severity
    code: str = "issue"
    message: str = Field(min_length=1)
    fix_suggestion: str | None = Field(default=None, alias="fixSuggestion")

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


def _usable_issues(raw):
    # Issues with an unknown severity or an empty message are dropped, not fatal.
    if not isinstance(raw, list):
        return raw
    kept = []
    for item in raw:
        try:
            kept.append(GeneratedIssue.model_validate(item))
        except PydanticValidationError:
            continue
    return kept


def _number_or_none(v):
    return v if isinstance(v, (int, float)) and not isinstance(v, bool) else None


class GeneratedObjectiveValidation(BaseModel):
    """Generated review of an OKR draft: the objective, its dates and its KRs."""
    issues: list[GeneratedIssue]
    score: float | None = None

    @field_validator("issues", mode="before")
    @classmethod
    def drop_unusable_issues(cls, v):
        return _usable_issues(v)

    @field_validator("score", mode="before")
    @classmethod
    def numeric_score(cls, v):
        return _number_or_none(v)


class GeneratedKrValidation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    issues: list[GeneratedIssue]
    suggested_target_value: float | None = Field(default=None, alias="suggestedTargetValue")

    @field_validator("issues", mode="before")
    @classmethod
    def drop_unusable_issues(cls, v):
        return _usable_issues(v)

    @field_validator("suggested_target_value", mode="before")
    @classmethod
    def numeric_target(cls, v):
        return _number_or_none(v)


# ---------------------------------------------------------------------------
# API bodies
# ---------------------------------------------------------------------------


class ObjectiveCreate(BaseModel):
    statement: str
    start_date: date
    end_date: date


class ObjectiveStatusUpdate(BaseModel):
    status: ObjectiveStatus


class KeyResultCreate(BaseModel):
    title: str
    metric_name: str | None = None
    unit: str | None = None
    target_value: float | None = None
    allow_high: bool = False


class CheckinCreate(BaseModel):
    value: float
    comment: str | None = None


class AlignmentCreate(BaseModel):
    parent_objective_id: str


class MemberCreate(BaseModel):
    user_id: str
    role: str = "viewer"


class MemberRoleUpdate(BaseModel):
    role: str


class KeyResultDraft(BaseModel):
    title: str
    metric_name: str | None = None
    unit: str | None = None
    target_value: float | None = None


class ObjectiveValidateRequest(BaseModel):
    statement: str
    start_date: date | None = None
    end_date: date | None = None
    key_results: list[KeyResultDraft] = []


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class InsightOut(BaseModel):
    risk: Risk | None = None
    explanation_short: str
    explanation_long: str
    suggestion: str
    source: Source
    version: int
    computed_at: str | None = None


class KeyResultOut(BaseModel):
    id: str
    objective_id: str
    title: str
    metric_name: str | None = None
    unit: str | None = None
    target_value: float | None = None
    current_value: float
    progress_pct: float | None = None
    health: str
    insight: InsightOut | None = None


class CheckinOut(BaseModel):
    id: str
    key_result_id: str
    value: float
    comment: str | None = None
    created_at: str | None = None


class AlignedObjectiveOut(BaseModel):
    id: str
    statement: str
    start_date: date
    end_date: date
    status: str


class ObjectiveSummaryStats(BaseModel):
    kr_count: int
    avg_progress_pct: float | None = None
    health_counts: dict[str, int]
    overall_health: str


class ObjectiveOut(BaseModel):
    id: str
    statement: str
    start_date: date
    end_date: date
    status: str
    insight: InsightOut | None = None
    summary: ObjectiveSummaryStats | None = None


class ObjectiveDetail(ObjectiveOut):
    key_results: list[KeyResultOut] = []
    aligned_to: list[AlignedObjectiveOut] = []
    aligned_from: list[AlignedObjectiveOut] = []


class MemberOut(BaseModel):
    user_id: str
    role: Role
    created_by: str | None = None


class DeleteInfo(BaseModel):
    key_result_id: str
    checkins_count: int


class AlignmentOut(BaseModel):
    aligned_to: list[AlignedObjectiveOut] = []
    aligned_from: list[AlignedObjectiveOut] = []


class IssueOut(BaseModel):
    severity: Severity
    code: str
    message: str
    fix_suggestion: str | None = None


class ValidationOut(BaseModel):
    source: Source
    issues: list[IssueOut] = []
    score: float | None = None
    suggested_target_value: float | None = None
    fingerprint: str | None = None


class AIStatusOut(BaseModel):
    enabled: bool
    ok: bool
    checked_at: str
