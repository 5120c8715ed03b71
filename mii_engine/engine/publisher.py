"""Result publisher - per-subject atomic commit of history + cache + staleness.

One transaction per subject:
    0. confirm the run still holds the run lock (write-locks the lock row)
    1. append the immutable ScoreResult row
    2. point the subject cache at it (score, rank, previous rank, timestamps)
    3. compare-and-clear the staleness flag
A failing transaction rolls back completely, so the subject's cache keeps
its pre-run value; the failure is returned to the scheduler, which decides
the run status. Subjects are published concurrently (bounded). Once the lock
is found taken over, no further subject is published.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mii_engine.engine.calculator import SubjectScore
from mii_engine.engine.errors import PersistenceError, RunSupersededError
from mii_engine.engine.staleness import StalenessTracker
from mii_engine.models.common import FailureStage
from mii_engine.models.run import ScoreResult, SubjectFailure
from mii_engine.repositories.runs import RunLockRepository, ScoreResultRepository
from mii_engine.repositories.subjects import SubjectRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishPlan:
    """Everything the publisher needs from a run that crossed the barrier."""

    run_id: UUID
    run_started_at: datetime
    computed_at: datetime
    scored: list[SubjectScore]
    ranks: dict[UUID, int | None]
    previous_ranks: dict[UUID, int | None]
    seen_versions: dict[UUID, int]
    reranks: dict[UUID, int | None] = field(default_factory=dict)


@dataclass
class PublishOutcome:
    published: list[UUID] = field(default_factory=list)
    reranked: list[UUID] = field(default_factory=list)
    failures: list[SubjectFailure] = field(default_factory=list)
    superseded: bool = False


class ResultPublisher:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession],
                 concurrency: int = 4) -> None:
        self._session_factory = session_factory
        self._concurrency = concurrency

    async def publish(self, plan: PublishPlan) -> PublishOutcome:
        semaphore = asyncio.Semaphore(self._concurrency)
        outcome = PublishOutcome()

        await asyncio.gather(*(
            self._guarded(semaphore, outcome, plan.run_id, score.subject_id,
                          partial(self._publish_subject, plan, score),
                          outcome.published)
            for score in plan.scored
        ))
        await self._rerank_all(semaphore, outcome, plan.run_id, plan.reranks)

        logger.info(
            "Run %s published %d subjects, reranked %d, %d publish failures",
            plan.run_id, len(outcome.published), len(outcome.reranked),
            len(outcome.failures),
        )
        return outcome

    async def rerank(self, run_id: UUID, reranks: dict[UUID, int | None],
                     outcome: PublishOutcome | None = None) -> PublishOutcome:
        """Rank-only cache updates, recorded into outcome when given."""
        outcome = outcome if outcome is not None else PublishOutcome()
        await self._rerank_all(
            asyncio.Semaphore(self._concurrency), outcome, run_id, reranks,
        )
        return outcome

    async def _rerank_all(self, semaphore: asyncio.Semaphore, outcome: PublishOutcome,
                          run_id: UUID, reranks: dict[UUID, int | None]) -> None:
        await asyncio.gather(*(
            self._guarded(semaphore, outcome, run_id, subject_id,
                          partial(self._rerank_subject, run_id, subject_id, rank),
                          outcome.reranked)
            for subject_id, rank in sorted(reranks.items())
        ))

    @staticmethod
    async def _guarded(semaphore: asyncio.Semaphore, outcome: PublishOutcome,
                       run_id: UUID, subject_id: UUID,
                       step: Callable[[], Awaitable[None]],
                       done: list[UUID]) -> None:
        async with semaphore:
            if outcome.superseded:
                return
            try:
                await step()
            except RunSupersededError as exc:
                if not outcome.superseded:
                    logger.error("%s; publishing stopped", exc)
                outcome.superseded = True
                return
            except PersistenceError as exc:
                logger.error("Run %s: %s", run_id, exc)
                outcome.failures.append(SubjectFailure(
                    subject_id=subject_id, stage=FailureStage.PUBLISH, message=str(exc),
                ))
                return
        done.append(subject_id)

    async def _publish_subject(self, plan: PublishPlan, score: SubjectScore) -> None:
        subject_id = score.subject_id
        rank = plan.ranks.get(subject_id)
        result = ScoreResult(
            run_id=plan.run_id,
            subject_id=subject_id,
            overall_score=score.overall_score,
            dimension_scores=score.dimension_scores,
            weights=score.weights,
            rank=rank,
            previous_rank=plan.previous_ranks.get(subject_id),
            trend=score.trend,
            strengths=score.strengths,
            improvement_areas=score.improvement_areas,
            defaulted_dimensions=score.defaulted_dimensions,
            low_confidence=score.low_confidence,
            computed_at=plan.computed_at,
        )
        try:
            async with self._session_factory() as session, session.begin():
                if not await RunLockRepository(session).confirm_holder(plan.run_id):
                    raise RunSupersededError(plan.run_id)
                subjects = SubjectRepository(session)
                await ScoreResultRepository(session).create(result)
                if not await subjects.update_cache(
                    subject_id, score=score.overall_score, rank=rank,
                    computed_at=plan.computed_at, run_id=plan.run_id,
                ):
                    raise PersistenceError(subject_id, "subject no longer exists")
                await StalenessTracker.clear_resolved(
                    subjects, subject_id,
                    run_started_at=plan.run_started_at,
                    seen_version=plan.seen_versions.get(subject_id, 0),
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(subject_id, str(exc)) from exc

    async def _rerank_subject(self, run_id: UUID, subject_id: UUID,
                              rank: int | None) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                if not await RunLockRepository(session).confirm_holder(run_id):
                    raise RunSupersededError(run_id)
                await SubjectRepository(session).update_rank(subject_id, rank)
        except SQLAlchemyError as exc:
            raise PersistenceError(subject_id, str(exc)) from exc
