"""Tests for per-subject atomic publishing."""

from uuid import UUID

import pytest

from mii_engine.engine.calculator import SubjectScore
from mii_engine.engine.publisher import PublishPlan, ResultPublisher
from mii_engine.models.common import FailureStage, Trend, new_uuid7, utc_now
from mii_engine.models.run import DimensionScore
from mii_engine.repositories.runs import RunLockRepository


def _score(subject_id: UUID, overall: int) -> SubjectScore:
    dim = DimensionScore(code="A", value=float(overall), weight=1.0)
    return SubjectScore(
        subject_id=subject_id, overall_score=overall,
        dimension_scores={"A": dim}, weights={"A": 1.0}, trend=Trend.STABLE,
        strengths=["A"], improvement_areas=["A"],
    )


def _plan(scored: list[SubjectScore], ranks: dict, *, started_at=None,
          seen_versions=None, reranks=None) -> PublishPlan:
    now = utc_now()
    return PublishPlan(
        run_id=new_uuid7(),
        run_started_at=started_at or now,
        computed_at=now,
        scored=scored,
        ranks=ranks,
        previous_ranks={s.subject_id: None for s in scored},
        seen_versions=seen_versions or {},
        reranks=reranks or {},
    )


async def _hold_lock(world, run_id: UUID | None) -> None:
    async with world.session_factory() as session, session.begin():
        locks = RunLockRepository(session)
        lock = await locks.ensure()
        await locks.compare_and_swap(
            expected_holder=lock.holder_run_id, new_holder=run_id,
            acquired_at=utc_now() if run_id is not None else None,
        )


async def _publish(world, plan: PublishPlan):
    await _hold_lock(world, plan.run_id)
    return await ResultPublisher(world.session_factory).publish(plan)


class TestResultPublisher:
    @pytest.mark.anyio
    async def test_publish_writes_history_cache_and_clears(self, world) -> None:
        sid = await world.add_subject()
        await world.mark_dirty(sid)
        version = (await world.subject(sid)).dirty_version
        plan = _plan([_score(sid, 72)], {sid: 1}, seen_versions={sid: version})

        outcome = await _publish(world, plan)

        assert outcome.published == [sid]
        assert outcome.failures == []
        row = await world.subject(sid)
        assert (row.current_score, row.current_rank) == (72, 1)
        assert row.last_run_id == plan.run_id
        assert row.is_dirty is False
        results = await world.results(sid)
        assert len(results) == 1
        assert results[0].dimension_scores["A"]["value"] == 72.0
        assert results[0].strengths == ["A"]

    @pytest.mark.anyio
    async def test_unknown_subject_is_publish_failure(self, world) -> None:
        known = await world.add_subject()
        ghost = new_uuid7()
        plan = _plan([_score(known, 50), _score(ghost, 40)], {known: 1, ghost: 2})

        outcome = await _publish(world, plan)

        assert outcome.published == [known]
        assert len(outcome.failures) == 1
        assert outcome.failures[0].subject_id == ghost
        assert outcome.failures[0].stage == FailureStage.PUBLISH
        assert await world.results(ghost) == []

    @pytest.mark.anyio
    async def test_stale_version_keeps_dirty_flag(self, world) -> None:
        sid = await world.add_subject()
        await world.mark_dirty(sid)
        plan = _plan([_score(sid, 10)], {sid: 1}, seen_versions={sid: 0})

        await _publish(world, plan)

        row = await world.subject(sid)
        assert row.current_score == 10
        assert row.is_dirty is True

    @pytest.mark.anyio
    async def test_rerank_updates_rank_only(self, world) -> None:
        moved = await world.add_subject()
        first = _plan([_score(moved, 30)], {moved: 1})
        await _publish(world, first)

        outcome = await _publish(world, _plan([], {}, reranks={moved: 2}))

        assert outcome.reranked == [moved]
        row = await world.subject(moved)
        assert (row.current_score, row.current_rank, row.previous_rank) == (30, 2, 1)
        assert row.last_run_id == first.run_id
        assert len(await world.results(moved)) == 1

    @pytest.mark.anyio
    async def test_run_without_lock_publishes_nothing(self, world) -> None:
        sid = await world.add_subject()
        other = await world.add_subject()
        plan = _plan([_score(sid, 60)], {sid: 1}, reranks={other: 2})
        await _hold_lock(world, new_uuid7())

        outcome = await ResultPublisher(world.session_factory).publish(plan)

        assert outcome.superseded is True
        assert outcome.published == []
        assert outcome.reranked == []
        assert outcome.failures == []
        assert await world.results(sid) == []
        assert (await world.subject(sid)).current_score is None
        assert (await world.subject(other)).current_rank is None

    @pytest.mark.anyio
    async def test_explicit_rerank_records_into_outcome(self, world) -> None:
        sid = await world.add_subject()
        plan = _plan([_score(sid, 40)], {sid: 1})
        outcome = await _publish(world, plan)

        await ResultPublisher(world.session_factory).rerank(plan.run_id, {sid: 3}, outcome)

        assert outcome.published == [sid]
        assert outcome.reranked == [sid]
        assert (await world.subject(sid)).current_rank == 3
