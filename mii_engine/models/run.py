"""Run models - Run summary, ScoreResult (immutable), subject cache view."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from mii_engine.models.common import (
    FailureStage,
    MIIBase,
    RunStatus,
    Trend,
    TriggerKind,
    UTCTimestamp,
    UUIDv7,
    new_uuid7,
    utc_now,
)


class IndicatorValue(MIIBase, frozen=True):
    """One indicator's contribution inside a dimension breakdown."""

    code: str
    value: float = Field(..., ge=0.0, le=100.0)
    weight: float
    record_count: int = 0
    defaulted: bool = False


class DimensionScore(MIIBase, frozen=True):
    """Normalized value of one dimension for one subject (never re-rounded)."""

    code: str
    value: float = Field(..., ge=0.0, le=100.0)
    weight: float
    defaulted: bool = False
    reason: str | None = None
    indicators: list[IndicatorValue] = Field(default_factory=list)


class SubjectFailure(MIIBase, frozen=True):
    """A subject that dropped out of a run, and where."""

    subject_id: UUID
    stage: FailureStage
    message: str


class ScoreResult(MIIBase, frozen=True):
    """Immutable per-(subject, run) history record.

    Append-only. Later runs add rows; they never rewrite earlier ones, so
    breakdowns keep the dimensions that were active when computed.
    """

    result_id: UUIDv7 = Field(default_factory=new_uuid7)
    run_id: UUID
    subject_id: UUID
    overall_score: int = Field(..., ge=0, le=100)
    dimension_scores: dict[str, DimensionScore]
    weights: dict[str, float]
    rank: int | None = Field(default=None, ge=1)
    previous_rank: int | None = None
    trend: Trend = Trend.STABLE
    strengths: list[str] = Field(default_factory=list)
    improvement_areas: list[str] = Field(default_factory=list)
    defaulted_dimensions: list[str] = Field(default_factory=list)
    low_confidence: bool = False
    computed_at: UTCTimestamp = Field(default_factory=utc_now)


class RunSummary(MIIBase):
    """Status-interface view of a run."""

    run_id: UUID
    trigger_kind: TriggerKind
    status: RunStatus
    subject_count: int
    weights: dict[str, float] = Field(default_factory=dict)
    scored_count: int = 0
    failed_count: int = 0
    published_count: int = 0
    reranked_count: int = 0
    failures: list[SubjectFailure] = Field(default_factory=list)
    error_message: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    duration_seconds: float | None = None


class SubjectCache(MIIBase):
    """Results-interface view of a subject's current (cached) standing."""

    subject_id: UUID
    name_en: str
    rank_eligible: bool
    current_score: int | None = None
    current_rank: int | None = None
    previous_rank: int | None = None
    is_dirty: bool = False
    dirty_since: datetime | None = None
    last_computed_at: datetime | None = None
    last_run_id: UUID | None = None
