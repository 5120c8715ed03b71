"""Run scheduler - single-flight orchestration of index runs.

Pipeline for an accepted run:
    1. submit: CAS the run lock, resolve the subject scope, snapshot each
       subject's dirty_version, create the Run (RUNNING) - one transaction
    2. snapshot the dimension registry (normalized weights, read-only)
    3. aggregate + score every subject on a bounded worker pool
    4. barrier (gather) → rank the whole field
    5. publish per subject while still holding the lock; after publish
       failures, re-rank the committed cache
    6. finalize the Run and release the lock

A trigger that finds the lock held is rejected immediately (Busy) and
recorded as an ABORTED run; it is never queued. Apart from cancellation,
nothing raised inside a run escapes: every outcome lands in the run's
status and report.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import assert_never
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mii_engine.config.settings import Settings
from mii_engine.engine.aggregator import MetricAggregator, SubjectContext
from mii_engine.engine.calculator import ScoreCalculator, SubjectScore
from mii_engine.engine.errors import (
    ConcurrencyError,
    ConfigurationError,
    RunSupersededError,
)
from mii_engine.engine.publisher import PublishOutcome, PublishPlan, ResultPublisher
from mii_engine.engine.ranking import RankEntry, assign_ranks
from mii_engine.engine.registry import DimensionRegistry
from mii_engine.engine.sources import SignalSource, SqlSignalSource
from mii_engine.engine.staleness import StalenessTracker
from mii_engine.models.common import (
    FailureStage,
    RunStatus,
    TriggerKind,
    as_utc,
    new_uuid7,
    utc_now,
)
from mii_engine.models.dimension import RegistrySnapshot
from mii_engine.models.run import RunSummary, SubjectFailure
from mii_engine.repositories.dimensions import DimensionRepository
from mii_engine.repositories.runs import (
    RunLockRepository,
    RunRepository,
    run_row_to_summary,
)
from mii_engine.repositories.subjects import SubjectRepository

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Triggers (closed variant) and trigger outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PeriodicTrigger:
    """Scheduled full recomputation."""


@dataclass(frozen=True)
class FullTrigger:
    """On-demand recomputation of every subject."""


@dataclass(frozen=True)
class SubsetTrigger:
    """On-demand recomputation of part of the field.

    dirty_only=True scopes to currently dirty subjects (optionally narrowed
    to subject_ids); dirty_only=False scopes to subject_ids exactly.
    """

    dirty_only: bool = True
    subject_ids: tuple[UUID, ...] = ()


Trigger = PeriodicTrigger | FullTrigger | SubsetTrigger


def trigger_kind(trigger: Trigger) -> TriggerKind:
    match trigger:
        case PeriodicTrigger():
            return TriggerKind.PERIODIC
        case FullTrigger():
            return TriggerKind.ON_DEMAND_ALL
        case SubsetTrigger():
            return TriggerKind.ON_DEMAND_SUBSET
        case _:
            assert_never(trigger)


@dataclass(frozen=True)
class Accepted:
    run_id: UUID
    subject_ids: tuple[UUID, ...]


@dataclass(frozen=True)
class Busy:
    active_run_id: UUID | None
    aborted_run_id: UUID


TriggerOutcome = Accepted | Busy


@dataclass(frozen=True)
class _PreparedRun:
    run_id: UUID
    kind: TriggerKind
    started_at: datetime
    subjects: tuple[SubjectContext, ...]
    seen_versions: dict[UUID, int]


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class RunScheduler:
    """Accepts triggers, enforces one active run, and executes runs.

    ``execute`` must be called on the scheduler instance that accepted the
    run; it holds the per-run staleness snapshot in memory.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source: SignalSource,
        *,
        worker_pool_size: int = 8,
        publish_concurrency: int = 4,
        lock_ttl_seconds: int = 3600,
        trend_band: int = 2,
    ) -> None:
        self._session_factory = session_factory
        self._aggregator = MetricAggregator(source)
        self._calculator = ScoreCalculator(trend_band=trend_band)
        self._publisher = ResultPublisher(session_factory, concurrency=publish_concurrency)
        self._tracker = StalenessTracker(session_factory)
        self._worker_pool_size = worker_pool_size
        self._lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self._prepared: dict[UUID, _PreparedRun] = {}

    @classmethod
    def from_settings(cls, session_factory: async_sessionmaker[AsyncSession],
                      settings: Settings) -> "RunScheduler":
        return cls(
            session_factory,
            SqlSignalSource(session_factory, settings.MII_DECLARED_SOURCES),
            worker_pool_size=settings.MII_WORKER_POOL_SIZE,
            publish_concurrency=settings.MII_PUBLISH_CONCURRENCY,
            lock_ttl_seconds=settings.MII_RUN_LOCK_TTL_SECONDS,
            trend_band=settings.MII_TREND_BAND,
        )

    @property
    def tracker(self) -> StalenessTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # Trigger interface
    # ------------------------------------------------------------------

    async def submit(self, trigger: Trigger) -> TriggerOutcome:
        """Accept a run (lock acquired, Run RUNNING) or reject it as busy."""
        if isinstance(trigger, SubsetTrigger) and not trigger.dirty_only \
                and not trigger.subject_ids:
            raise ValueError("An explicit subset run needs subject_ids.")
        try:
            return await self._submit(trigger)
        except IntegrityError:
            # Two first-ever triggers raced to create the lock row.
            logger.info("Run lock row created concurrently; retrying submit")
            return await self._submit(trigger)

    async def _submit(self, trigger: Trigger) -> TriggerOutcome:
        kind = trigger_kind(trigger)
        run_id = new_uuid7()
        started_at = utc_now()

        async with self._session_factory() as session, session.begin():
            runs = RunRepository(session)
            subjects = SubjectRepository(session)

            acquired, active_run_id = await self._acquire(
                RunLockRepository(session), runs, run_id, started_at,
            )
            if not acquired:
                await runs.create(
                    run_id=run_id, trigger_kind=kind.value,
                    status=RunStatus.ABORTED.value, subject_ids=[],
                    started_at=started_at, completed_at=started_at,
                    error_message=f"Rejected: run {active_run_id} already in progress.",
                )
                logger.warning(
                    "%s trigger rejected: run %s already in progress", kind, active_run_id,
                )
                return Busy(active_run_id=active_run_id, aborted_run_id=run_id)

            contexts = await self._resolve_scope(subjects, trigger)
            subject_ids = [ctx.subject_id for ctx in contexts]
            seen_versions = await subjects.dirty_versions(subject_ids)
            await runs.create(
                run_id=run_id, trigger_kind=kind.value,
                status=RunStatus.RUNNING.value, subject_ids=subject_ids,
                started_at=started_at,
            )

        self._prepared[run_id] = _PreparedRun(
            run_id=run_id, kind=kind, started_at=started_at,
            subjects=tuple(contexts), seen_versions=seen_versions,
        )
        logger.info("Run %s accepted (%s, %d subjects)", run_id, kind, len(subject_ids))
        return Accepted(run_id=run_id, subject_ids=tuple(subject_ids))

    async def execute(self, run_id: UUID) -> RunSummary:
        """Execute an accepted run to a terminal status; always releases the lock."""
        prepared = self._prepared.pop(run_id, None)
        if prepared is None:
            raise LookupError(f"Run {run_id} is not pending on this scheduler.")
        try:
            return await self._execute(prepared)
        finally:
            await self._release(run_id)

    async def run(self, trigger: Trigger, *, raise_on_busy: bool = False) -> RunSummary | Busy:
        """Submit and execute in one call."""
        outcome = await self.submit(trigger)
        if isinstance(outcome, Busy):
            if raise_on_busy:
                raise ConcurrencyError(outcome.active_run_id)
            return outcome
        return await self.execute(outcome.run_id)

    async def run_all(self, *, raise_on_busy: bool = False) -> RunSummary | Busy:
        return await self.run(FullTrigger(), raise_on_busy=raise_on_busy)

    async def run_periodic(self) -> RunSummary | Busy:
        return await self.run(PeriodicTrigger())

    async def run_subset(self, dirty_only: bool = True,
                         subject_ids: tuple[UUID, ...] = (), *,
                         raise_on_busy: bool = False) -> RunSummary | Busy:
        return await self.run(
            SubsetTrigger(dirty_only=dirty_only, subject_ids=tuple(subject_ids)),
            raise_on_busy=raise_on_busy,
        )

    # ------------------------------------------------------------------
    # Status interface
    # ------------------------------------------------------------------

    async def active_run(self) -> RunSummary | None:
        async with self._session_factory() as session:
            lock = await RunLockRepository(session).get()
            if lock is None or lock.holder_run_id is None:
                return None
            row = await RunRepository(session).get(lock.holder_run_id)
            return run_row_to_summary(row) if row is not None else None

    async def latest_run(self) -> RunSummary | None:
        async with self._session_factory() as session:
            row = await RunRepository(session).get_latest_completed()
            return run_row_to_summary(row) if row is not None else None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _acquire(self, locks: RunLockRepository, runs: RunRepository,
                       run_id: UUID, now: datetime) -> tuple[bool, UUID | None]:
        lock = await locks.ensure()
        holder = lock.holder_run_id
        if holder is not None:
            acquired_at = as_utc(lock.acquired_at)
            if acquired_at is not None and now - acquired_at < self._lock_ttl:
                return False, holder
            logger.warning("Run lock held by %s since %s is stale; taking over",
                           holder, acquired_at)

        if not await locks.compare_and_swap(
            expected_holder=holder, new_holder=run_id, acquired_at=now,
        ):
            current = await locks.get()
            return False, current.holder_run_id if current is not None else None

        if holder is not None:
            await runs.finalize(
                holder, status=RunStatus.FAILED, completed_at=now,
                error_message="Abandoned: run lock expired before completion.",
            )
        return True, None

    async def _release(self, run_id: UUID) -> None:
        async with self._session_factory() as session, session.begin():
            released = await RunLockRepository(session).compare_and_swap(
                expected_holder=run_id, new_holder=None, acquired_at=None,
            )
        if not released:
            logger.warning("Run %s no longer held the run lock at release", run_id)

    @staticmethod
    async def _resolve_scope(subjects: SubjectRepository,
                             trigger: Trigger) -> list[SubjectContext]:
        match trigger:
            case PeriodicTrigger() | FullTrigger():
                rows = await subjects.list_all()
            case SubsetTrigger(dirty_only=True, subject_ids=wanted):
                dirty = await subjects.list_dirty_ids()
                if wanted:
                    dirty = [sid for sid in dirty if sid in set(wanted)]
                rows = await subjects.list_by_ids(dirty)
            case SubsetTrigger(subject_ids=wanted):
                rows = await subjects.list_by_ids(list(wanted))
            case _:
                assert_never(trigger)

        return [
            SubjectContext(
                subject_id=row.subject_id,
                rank_eligible=row.rank_eligible,
                population=row.population,
                current_score=row.current_score,
                current_rank=row.current_rank,
            )
            for row in rows
        ]

    async def _snapshot_registry(self) -> RegistrySnapshot:
        async with self._session_factory() as session:
            return await DimensionRegistry(DimensionRepository(session)).snapshot()

    async def _execute(self, prepared: _PreparedRun) -> RunSummary:
        run_id = prepared.run_id
        publishing = False
        try:
            snapshot = await self._snapshot_registry()
            async with self._session_factory() as session, session.begin():
                if not await RunRepository(session).set_weights(run_id, snapshot.weights):
                    raise RunSupersededError(run_id)

            scored, failures = await self._score_all(prepared, snapshot)
            plan = await self._plan(prepared, scored)

            publishing = True
            outcome = await self._publisher.publish(plan)
            if outcome.failures and not outcome.superseded:
                await self._settle_ranks(run_id, outcome)
            if outcome.superseded:
                raise RunSupersededError(run_id)
            failures.extend(outcome.failures)
            await self._redirty(run_id, failures)

            status = RunStatus.FAILED if outcome.failures else RunStatus.SUCCEEDED
            error_message = None
            if outcome.failures:
                error_message = f"{len(outcome.failures)} subject(s) failed to publish."
            return await self._finish(
                prepared, status,
                scored_count=len(scored),
                published_count=len(outcome.published),
                reranked_count=len(outcome.reranked),
                failures=failures,
                error_message=error_message,
            )
        except ConfigurationError as exc:
            logger.error("Run %s failed: %s", run_id, exc)
            return await self._finish(prepared, RunStatus.FAILED, error_message=str(exc))
        except RunSupersededError as exc:
            logger.error("Run %s stopped: %s", run_id, exc)
            return await self._finish(
                prepared, RunStatus.FAILED,
                error_message="Abandoned: run lock taken over before completion.",
            )
        except asyncio.CancelledError:
            logger.error("Run %s cancelled%s", run_id,
                         " during publish" if publishing else " before publish")
            await self._finish(
                prepared, RunStatus.FAILED,
                error_message="Run cancelled before completion (timeout or shutdown).",
            )
            raise
        except Exception as exc:
            logger.exception("Run %s failed unexpectedly: %s", run_id, exc)
            return await self._finish(prepared, RunStatus.FAILED, error_message=str(exc))

    async def _score_all(
        self, prepared: _PreparedRun, snapshot: RegistrySnapshot,
    ) -> tuple[list[SubjectScore], list[SubjectFailure]]:
        semaphore = asyncio.Semaphore(self._worker_pool_size)
        outcomes = await asyncio.gather(*(
            self._score_subject(semaphore, prepared.run_id, ctx, snapshot)
            for ctx in prepared.subjects
        ))
        scored = [o for o in outcomes if isinstance(o, SubjectScore)]
        failures = [o for o in outcomes if isinstance(o, SubjectFailure)]
        logger.info("Run %s barrier reached: %d scored, %d failed",
                    prepared.run_id, len(scored), len(failures))
        return scored, failures

    async def _score_subject(
        self, semaphore: asyncio.Semaphore, run_id: UUID,
        ctx: SubjectContext, snapshot: RegistrySnapshot,
    ) -> SubjectScore | SubjectFailure:
        async with semaphore:
            try:
                dimensions = await self._aggregator.aggregate(ctx, snapshot)
                return self._calculator.compute(
                    ctx.subject_id, dimensions, snapshot, previous_score=ctx.current_score,
                )
            except Exception as exc:
                logger.exception("Run %s: subject %s failed to compute", run_id, ctx.subject_id)
                return SubjectFailure(
                    subject_id=ctx.subject_id, stage=FailureStage.COMPUTE, message=str(exc),
                )

    async def _plan(self, prepared: _PreparedRun, scored: list[SubjectScore]) -> PublishPlan:
        """Rank the whole field: fresh scores in scope, cached scores elsewhere.

        Subjects that failed to compute keep their cached score and are ranked
        on it; with no cached score they stay unranked.
        """
        async with self._session_factory() as session:
            field_rows = await SubjectRepository(session).list_all()

        fresh = {s.subject_id: s for s in scored}
        in_scope = {ctx.subject_id: ctx for ctx in prepared.subjects}
        entries: list[RankEntry] = []
        cached: dict[UUID, int | None] = {}
        for row in field_rows:
            cached[row.subject_id] = row.current_rank
            if row.subject_id in fresh:
                entries.append(RankEntry(
                    row.subject_id, fresh[row.subject_id].overall_score, row.rank_eligible,
                ))
            elif row.current_score is not None:
                entries.append(RankEntry(row.subject_id, row.current_score, row.rank_eligible))
        for subject_id, score in fresh.items():
            if subject_id not in cached:
                entries.append(RankEntry(
                    subject_id, score.overall_score, in_scope[subject_id].rank_eligible,
                ))

        ranks = assign_ranks(entries)
        reranks = {
            entry.subject_id: ranks[entry.subject_id]
            for entry in entries
            if entry.subject_id not in fresh
            and ranks[entry.subject_id] != cached.get(entry.subject_id)
        }
        return PublishPlan(
            run_id=prepared.run_id,
            run_started_at=prepared.started_at,
            computed_at=utc_now(),
            scored=sorted(scored, key=lambda s: s.subject_id),
            ranks={sid: ranks[sid] for sid in fresh},
            previous_ranks={sid: cached.get(sid) for sid in fresh},
            seen_versions=prepared.seen_versions,
            reranks=reranks,
        )

    async def _settle_ranks(self, run_id: UUID, outcome: PublishOutcome) -> None:
        """Re-rank the committed cache after publish failures.

        A subject whose publish rolled back keeps its pre-run score and rank,
        which can collide with ranks just committed for others.
        """
        async with self._session_factory() as session:
            rows = await SubjectRepository(session).list_all()
        ranks = assign_ranks(
            RankEntry(row.subject_id, row.current_score, row.rank_eligible)
            for row in rows
            if row.current_score is not None
        )
        drift = {
            row.subject_id: ranks.get(row.subject_id)
            for row in rows
            if ranks.get(row.subject_id) != row.current_rank
        }
        if drift:
            logger.warning("Run %s: settling %d cached ranks after publish failures",
                           run_id, len(drift))
            await self._publisher.rerank(run_id, drift, outcome)

    async def _redirty(self, run_id: UUID, failures: list[SubjectFailure]) -> None:
        """Failed subjects stay candidates for the next dirty-subset run."""
        for failure in failures:
            try:
                await self._tracker.mark_dirty(failure.subject_id)
            except (LookupError, SQLAlchemyError) as exc:
                logger.error("Run %s: could not re-mark subject %s dirty: %s",
                             run_id, failure.subject_id, exc)

    async def _finish(self, prepared: _PreparedRun, status: RunStatus, *,
                      scored_count: int = 0, published_count: int = 0,
                      reranked_count: int = 0,
                      failures: list[SubjectFailure] | None = None,
                      error_message: str | None = None) -> RunSummary:
        failures = failures or []
        async with self._session_factory() as session, session.begin():
            runs = RunRepository(session)
            await runs.finalize(
                prepared.run_id,
                status=status,
                completed_at=utc_now(),
                scored_count=scored_count,
                failed_count=len(failures),
                published_count=published_count,
                reranked_count=reranked_count,
                failures=[f.model_dump(mode="json") for f in failures],
                error_message=error_message,
            )
            row = await runs.get(prepared.run_id)
        summary = run_row_to_summary(row)
        logger.info("Run %s finished %s in %.2fs (%d scored, %d failed)",
                    prepared.run_id, summary.status, summary.duration_seconds or 0.0,
                    summary.scored_count, summary.failed_count)
        return summary
