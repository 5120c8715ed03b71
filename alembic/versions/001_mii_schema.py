"""MII schema - dimensions, subjects, source records, runs, run lock, results.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

RUN_LOCK_NAME = "mii-index"


def upgrade() -> None:
    # -- Configuration --
    op.create_table(
        "mii_dimensions",
        sa.Column("dimension_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("code", sa.String(50), nullable=False, unique=True),
        sa.Column("name_en", sa.String(255), nullable=False),
        sa.Column("name_ar", sa.String(255), server_default="", nullable=False),
        sa.Column("description", sa.Text, server_default=""),
        sa.Column("weight", sa.Float, nullable=False),
        sa.Column("is_active", sa.Boolean, server_default="true", nullable=False),
        sa.Column("sort_order", sa.Integer, server_default="0", nullable=False),
        sa.Column("indicators", JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    # -- Subjects (identity + cache + staleness) --
    op.create_table(
        "mii_subjects",
        sa.Column("subject_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("name_en", sa.String(255), nullable=False),
        sa.Column("population", sa.Integer, nullable=True),
        sa.Column("rank_eligible", sa.Boolean, server_default="true", nullable=False),
        sa.Column("current_score", sa.Integer, nullable=True),
        sa.Column("current_rank", sa.Integer, nullable=True),
        sa.Column("previous_rank", sa.Integer, nullable=True),
        sa.Column("last_computed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_id", UUID(as_uuid=True), nullable=True),
        sa.Column("is_dirty", sa.Boolean, server_default="false", nullable=False),
        sa.Column("dirty_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_dirty_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dirty_version", sa.Integer, server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_mii_subjects_dirty", "mii_subjects", ["is_dirty"],
        postgresql_where=sa.text("is_dirty"),
    )

    op.create_table(
        "mii_source_records",
        sa.Column("record_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("source", sa.String(100), nullable=False, index=True),
        sa.Column("subject_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("attributes", JSONB, nullable=False),
        sa.Column("is_deleted", sa.Boolean, server_default="false", nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    # -- Runs (OPERATIONAL) --
    op.create_table(
        "mii_runs",
        sa.Column("run_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("trigger_kind", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, index=True),
        sa.Column("subject_ids", JSONB, nullable=False),
        sa.Column("weights", JSONB, nullable=False),
        sa.Column("scored_count", sa.Integer, server_default="0", nullable=False),
        sa.Column("failed_count", sa.Integer, server_default="0", nullable=False),
        sa.Column("published_count", sa.Integer, server_default="0", nullable=False),
        sa.Column("reranked_count", sa.Integer, server_default="0", nullable=False),
        sa.Column("failures", JSONB, nullable=False),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )

    lock_table = op.create_table(
        "mii_run_locks",
        sa.Column("lock_name", sa.String(50), primary_key=True),
        sa.Column("holder_run_id", UUID(as_uuid=True), nullable=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.bulk_insert(lock_table, [
        {"lock_name": RUN_LOCK_NAME, "holder_run_id": None, "acquired_at": None},
    ])

    # -- History (IMMUTABLE) --
    op.create_table(
        "mii_score_results",
        sa.Column("result_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("run_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("subject_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("overall_score", sa.Integer, nullable=False),
        sa.Column("dimension_scores", JSONB, nullable=False),
        sa.Column("weights", JSONB, nullable=False),
        sa.Column("rank", sa.Integer, nullable=True),
        sa.Column("previous_rank", sa.Integer, nullable=True),
        sa.Column("trend", sa.String(10), nullable=False),
        sa.Column("strengths", JSONB, nullable=False),
        sa.Column("improvement_areas", JSONB, nullable=False),
        sa.Column("defaulted_dimensions", JSONB, nullable=False),
        sa.Column("low_confidence", sa.Boolean, server_default="false", nullable=False),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("subject_id", "run_id", name="uq_score_result_subject_run"),
    )


def downgrade() -> None:
    op.drop_table("mii_score_results")
    op.drop_table("mii_run_locks")
    op.drop_table("mii_runs")
    op.drop_table("mii_source_records")
    op.drop_index("ix_mii_subjects_dirty", table_name="mii_subjects")
    op.drop_table("mii_subjects")
    op.drop_table("mii_dimensions")
