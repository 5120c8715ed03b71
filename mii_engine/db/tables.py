"""SQLAlchemy ORM table models for the MII engine.

All tables defined in a single file. Uses FlexJSON (JSONB on Postgres,
JSON on SQLite) for complex nested types.

Categories:
- IMMUTABLE: ScoreResult (append-only history)
- OPERATIONAL: Dimension, Subject cache fields, Run (status updates allowed),
               RunLock (compare-and-swap single row), SourceRecord
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from mii_engine.db.session import Base

# JSONB on PostgreSQL, plain JSON on SQLite (for tests)
FlexJSON = JSONB().with_variant(JSON(), "sqlite")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class DimensionRow(Base):
    """A weighted axis of the index with its extraction contract."""

    __tablename__ = "mii_dimensions"

    dimension_id: Mapped[UUID] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name_en: Mapped[str] = mapped_column(String(255), nullable=False)
    name_ar: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    indicators = mapped_column(FlexJSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Subjects - engine owns only the cache and staleness columns
# ---------------------------------------------------------------------------


class SubjectRow(Base):
    __tablename__ = "mii_subjects"

    subject_id: Mapped[UUID] = mapped_column(primary_key=True)
    name_en: Mapped[str] = mapped_column(String(255), nullable=False)
    population: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rank_eligible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    current_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_computed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_run_id: Mapped[UUID | None] = mapped_column(nullable=True)

    is_dirty: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    dirty_since: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_dirty_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    dirty_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SourceRecordRow(Base):
    """Upstream entity contributing raw signals (challenge, pilot, ...)."""

    __tablename__ = "mii_source_records"

    record_id: Mapped[UUID] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    subject_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    attributes = mapped_column(FlexJSON, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Runs - OPERATIONAL (status transitions once)
# ---------------------------------------------------------------------------


class RunRow(Base):
    __tablename__ = "mii_runs"

    run_id: Mapped[UUID] = mapped_column(primary_key=True)
    trigger_kind: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    subject_ids = mapped_column(FlexJSON, nullable=False)
    weights = mapped_column(FlexJSON, nullable=False)
    scored_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    published_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reranked_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failures = mapped_column(FlexJSON, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )


class RunLockRow(Base):
    """Single-flight run-status record, updated by compare-and-swap only."""

    __tablename__ = "mii_run_locks"

    lock_name: Mapped[str] = mapped_column(String(50), primary_key=True)
    holder_run_id: Mapped[UUID | None] = mapped_column(nullable=True)
    acquired_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )


# ---------------------------------------------------------------------------
# History - IMMUTABLE (append-only)
# ---------------------------------------------------------------------------


class ScoreResultRow(Base):
    __tablename__ = "mii_score_results"
    __table_args__ = (
        UniqueConstraint("subject_id", "run_id", name="uq_score_result_subject_run"),
    )

    result_id: Mapped[UUID] = mapped_column(primary_key=True)
    run_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    subject_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    overall_score: Mapped[int] = mapped_column(Integer, nullable=False)
    dimension_scores = mapped_column(FlexJSON, nullable=False)
    weights = mapped_column(FlexJSON, nullable=False)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    trend: Mapped[str] = mapped_column(String(10), nullable=False)
    strengths = mapped_column(FlexJSON, nullable=False)
    improvement_areas = mapped_column(FlexJSON, nullable=False)
    defaulted_dimensions = mapped_column(FlexJSON, nullable=False)
    low_confidence: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
