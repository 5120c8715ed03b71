"""Run repositories - run records, the single-flight run lock, score history."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mii_engine.db.tables import RunLockRow, RunRow, ScoreResultRow
from mii_engine.models.common import (
    TERMINAL_RUN_STATUSES,
    RunStatus,
    TriggerKind,
    as_utc,
)
from mii_engine.models.run import RunSummary, ScoreResult, SubjectFailure

RUN_LOCK_NAME = "mii-index"


def run_row_to_summary(row: RunRow) -> RunSummary:
    started_at = as_utc(row.started_at)
    completed_at = as_utc(row.completed_at)
    duration = None
    if completed_at is not None:
        duration = (completed_at - started_at).total_seconds()
    return RunSummary(
        run_id=row.run_id,
        trigger_kind=TriggerKind(row.trigger_kind),
        status=RunStatus(row.status),
        subject_count=len(row.subject_ids or []),
        weights=row.weights or {},
        scored_count=row.scored_count,
        failed_count=row.failed_count,
        published_count=row.published_count,
        reranked_count=row.reranked_count,
        failures=[SubjectFailure.model_validate(f) for f in row.failures or []],
        error_message=row.error_message,
        started_at=started_at,
        completed_at=completed_at,
        duration_seconds=duration,
    )


class RunRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, run_id: UUID, trigger_kind: str, status: str,
                     subject_ids: list[UUID], started_at: datetime,
                     completed_at: datetime | None = None,
                     error_message: str | None = None) -> RunRow:
        row = RunRow(
            run_id=run_id, trigger_kind=trigger_kind, status=status,
            subject_ids=[str(sid) for sid in subject_ids],
            weights={}, failures=[],
            scored_count=0, failed_count=0, published_count=0, reranked_count=0,
            error_message=error_message,
            started_at=started_at, completed_at=completed_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, run_id: UUID) -> RunRow | None:
        return await self._session.get(RunRow, run_id, populate_existing=True)

    async def set_weights(self, run_id: UUID, weights: dict[str, float]) -> bool:
        """Record the run's weight snapshot. Terminal runs are left untouched."""
        result = await self._session.execute(
            update(RunRow)
            .where(RunRow.run_id == run_id)
            .where(RunRow.status == RunStatus.RUNNING.value)
            .values(weights=weights)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def finalize(self, run_id: UUID, *, status: RunStatus,
                       completed_at: datetime, scored_count: int = 0,
                       failed_count: int = 0, published_count: int = 0,
                       reranked_count: int = 0, failures: list | None = None,
                       error_message: str | None = None) -> bool:
        """Transition RUNNING -> terminal. Returns False if already terminal."""
        if status not in TERMINAL_RUN_STATUSES:
            raise ValueError(f"Cannot finalize run with non-terminal status {status}")
        result = await self._session.execute(
            update(RunRow)
            .where(RunRow.run_id == run_id)
            .where(RunRow.status == RunStatus.RUNNING.value)
            .values(
                status=status.value,
                completed_at=completed_at,
                scored_count=scored_count,
                failed_count=failed_count,
                published_count=published_count,
                reranked_count=reranked_count,
                failures=failures or [],
                error_message=error_message,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_active(self) -> RunRow | None:
        result = await self._session.execute(
            select(RunRow)
            .where(RunRow.status == RunStatus.RUNNING.value)
            .order_by(RunRow.started_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_latest_completed(self) -> RunRow | None:
        """Latest run that went through computation (SUCCEEDED or FAILED)."""
        result = await self._session.execute(
            select(RunRow)
            .where(RunRow.status.in_([RunStatus.SUCCEEDED.value, RunStatus.FAILED.value]))
            .order_by(RunRow.completed_at.desc(), RunRow.run_id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_recent(self, limit: int = 20) -> list[RunRow]:
        result = await self._session.execute(
            select(RunRow).order_by(RunRow.started_at.desc()).limit(limit)
        )
        return list(result.scalars().all())


class RunLockRepository:
    """Compare-and-swap access to the single run-status record."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, lock_name: str = RUN_LOCK_NAME) -> RunLockRow | None:
        return await self._session.get(RunLockRow, lock_name, populate_existing=True)

    async def ensure(self, lock_name: str = RUN_LOCK_NAME) -> RunLockRow:
        row = await self.get(lock_name)
        if row is None:
            row = RunLockRow(lock_name=lock_name, holder_run_id=None, acquired_at=None)
            self._session.add(row)
            await self._session.flush()
        return row

    async def compare_and_swap(self, *, expected_holder: UUID | None,
                               new_holder: UUID | None,
                               acquired_at: datetime | None,
                               lock_name: str = RUN_LOCK_NAME) -> bool:
        """Set the holder only if it still equals expected_holder."""
        stmt = update(RunLockRow).where(RunLockRow.lock_name == lock_name)
        if expected_holder is None:
            stmt = stmt.where(RunLockRow.holder_run_id.is_(None))
        else:
            stmt = stmt.where(RunLockRow.holder_run_id == expected_holder)
        result = await self._session.execute(
            stmt.values(holder_run_id=new_holder, acquired_at=acquired_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def confirm_holder(self, run_id: UUID,
                             lock_name: str = RUN_LOCK_NAME) -> bool:
        """Write-lock the run lock row if run_id still holds it.

        A no-op UPDATE rather than a read: the row stays locked until the
        caller's transaction ends, so a takeover cannot commit in between.
        """
        result = await self._session.execute(
            update(RunLockRow)
            .where(RunLockRow.lock_name == lock_name)
            .where(RunLockRow.holder_run_id == run_id)
            .values(holder_run_id=run_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class ScoreResultRepository:
    """Append-only history: rows are inserted, never updated or deleted."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, result: ScoreResult) -> ScoreResultRow:
        row = ScoreResultRow(
            result_id=result.result_id,
            run_id=result.run_id,
            subject_id=result.subject_id,
            overall_score=result.overall_score,
            dimension_scores={
                code: dim.model_dump(mode="json")
                for code, dim in result.dimension_scores.items()
            },
            weights=dict(result.weights),
            rank=result.rank,
            previous_rank=result.previous_rank,
            trend=result.trend.value,
            strengths=list(result.strengths),
            improvement_areas=list(result.improvement_areas),
            defaulted_dimensions=list(result.defaulted_dimensions),
            low_confidence=result.low_confidence,
            computed_at=result.computed_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_by_subject(self, subject_id: UUID, *, limit: int = 20,
                              offset: int = 0) -> list[ScoreResultRow]:
        """Newest first."""
        result = await self._session.execute(
            select(ScoreResultRow)
            .where(ScoreResultRow.subject_id == subject_id)
            .order_by(ScoreResultRow.computed_at.desc(), ScoreResultRow.result_id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def count_by_subject(self, subject_id: UUID) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(ScoreResultRow)
            .where(ScoreResultRow.subject_id == subject_id)
        )
        return int(result.scalar_one())

    async def get_by_run(self, run_id: UUID) -> list[ScoreResultRow]:
        result = await self._session.execute(
            select(ScoreResultRow)
            .where(ScoreResultRow.run_id == run_id)
            .order_by(ScoreResultRow.subject_id)
        )
        return list(result.scalars().all())
