"""Tests for SubjectRepository: identity upserts, leaderboard, staleness columns."""

from datetime import timedelta
from uuid import UUID

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from mii_engine.models.common import as_utc, new_uuid7, utc_now
from mii_engine.repositories.subjects import SubjectRepository


def _id(n: int) -> UUID:
    return UUID(int=n)


@pytest.fixture
def repo(db_session: AsyncSession) -> SubjectRepository:
    return SubjectRepository(db_session)


class TestUpsert:
    @pytest.mark.anyio
    async def test_create_and_get(self, repo: SubjectRepository) -> None:
        row = await repo.upsert(subject_id=_id(1), name_en="Riyadh", population=7_000_000)
        assert row.rank_eligible is True
        assert row.is_dirty is False
        assert row.dirty_version == 0
        fetched = await repo.get(_id(1))
        assert fetched.name_en == "Riyadh"

    @pytest.mark.anyio
    async def test_update_keeps_cache(self, repo: SubjectRepository) -> None:
        await repo.upsert(subject_id=_id(1), name_en="Riyadh")
        await repo.update_cache(_id(1), score=70, rank=1, computed_at=utc_now(),
                                run_id=new_uuid7())

        row = await repo.upsert(subject_id=_id(1), name_en="Riyadh City",
                                rank_eligible=False)

        assert row.name_en == "Riyadh City"
        assert row.rank_eligible is False
        assert row.current_score == 70

    @pytest.mark.anyio
    async def test_get_unknown(self, repo: SubjectRepository) -> None:
        assert await repo.get(_id(99)) is None


class TestListing:
    @pytest.mark.anyio
    async def test_list_by_ids_ordered(self, repo: SubjectRepository) -> None:
        for n in (3, 1, 2):
            await repo.upsert(subject_id=_id(n), name_en=f"M{n}")
        rows = await repo.list_by_ids([_id(3), _id(1)])
        assert [r.subject_id for r in rows] == [_id(1), _id(3)]
        assert await repo.list_by_ids([]) == []

    @pytest.mark.anyio
    async def test_leaderboard_ranked_first(self, repo: SubjectRepository) -> None:
        run_id = new_uuid7()
        for n in (1, 2, 3):
            await repo.upsert(subject_id=_id(n), name_en=f"M{n}")
        await repo.update_cache(_id(3), score=90, rank=1, computed_at=utc_now(), run_id=run_id)
        await repo.update_cache(_id(2), score=50, rank=2, computed_at=utc_now(), run_id=run_id)

        rows = await repo.list_leaderboard()

        assert [r.subject_id for r in rows] == [_id(3), _id(2), _id(1)]
        assert [r.subject_id for r in await repo.list_leaderboard(limit=1, offset=1)] == [_id(2)]


class TestStalenessColumns:
    @pytest.mark.anyio
    async def test_mark_dirty_unknown_subject(self, repo: SubjectRepository) -> None:
        assert await repo.mark_dirty(_id(42), utc_now()) is False

    @pytest.mark.anyio
    async def test_mark_dirty_tracks_earliest_and_latest(self, repo: SubjectRepository) -> None:
        await repo.upsert(subject_id=_id(1), name_en="M1")
        late = utc_now()
        early = late - timedelta(hours=1)

        await repo.mark_dirty(_id(1), late)
        await repo.mark_dirty(_id(1), early)

        row = await repo.get(_id(1))
        assert row.is_dirty is True
        assert row.dirty_version == 2
        assert as_utc(row.dirty_since) == early
        assert as_utc(row.last_dirty_at) == late
        assert await repo.list_dirty_ids() == [_id(1)]
        assert await repo.dirty_versions([_id(1)]) == {_id(1): 2}

    @pytest.mark.anyio
    async def test_clear_requires_same_version(self, repo: SubjectRepository) -> None:
        await repo.upsert(subject_id=_id(1), name_en="M1")
        await repo.mark_dirty(_id(1), utc_now() - timedelta(minutes=5))
        started = utc_now()

        assert await repo.clear_dirty_if_unchanged(
            _id(1), run_started_at=started, seen_version=0,
        ) is False
        assert await repo.clear_dirty_if_unchanged(
            _id(1), run_started_at=started, seen_version=1,
        ) is True
        row = await repo.get(_id(1))
        assert row.is_dirty is False
        assert row.dirty_since is None

    @pytest.mark.anyio
    async def test_clear_refused_for_signal_after_start(self, repo: SubjectRepository) -> None:
        await repo.upsert(subject_id=_id(1), name_en="M1")
        started = utc_now()
        await repo.mark_dirty(_id(1), started + timedelta(seconds=1))

        assert await repo.clear_dirty_if_unchanged(
            _id(1), run_started_at=started, seen_version=1,
        ) is False
        assert (await repo.get(_id(1))).is_dirty is True


class TestCache:
    @pytest.mark.anyio
    async def test_update_cache_shifts_previous_rank(self, repo: SubjectRepository) -> None:
        await repo.upsert(subject_id=_id(1), name_en="M1")
        await repo.update_cache(_id(1), score=60, rank=3, computed_at=utc_now(),
                                run_id=new_uuid7())
        run_id = new_uuid7()
        await repo.update_cache(_id(1), score=65, rank=2, computed_at=utc_now(), run_id=run_id)

        row = await repo.get(_id(1))
        assert (row.current_score, row.current_rank, row.previous_rank) == (65, 2, 3)
        assert row.last_run_id == run_id

    @pytest.mark.anyio
    async def test_update_rank_only(self, repo: SubjectRepository) -> None:
        await repo.upsert(subject_id=_id(1), name_en="M1")
        await repo.update_cache(_id(1), score=60, rank=1, computed_at=utc_now(),
                                run_id=new_uuid7())

        assert await repo.update_rank(_id(1), 2) is True
        assert await repo.update_rank(_id(7), 1) is False
        row = await repo.get(_id(1))
        assert (row.current_score, row.current_rank, row.previous_rank) == (60, 2, 1)

    @pytest.mark.anyio
    async def test_update_cache_unknown_subject(self, repo: SubjectRepository) -> None:
        assert await repo.update_cache(
            _id(5), score=1, rank=None, computed_at=utc_now(), run_id=new_uuid7(),
        ) is False
