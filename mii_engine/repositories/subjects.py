"""Subject repository - identity fields, cached results, staleness columns.

Staleness writes are single conditional UPDATE statements so that a
concurrent mark_dirty can never be lost by a clear:

- mark_dirty bumps dirty_version and keeps the earliest dirty_since.
- clear_dirty_if_unchanged only matches when dirty_version is still the
  version observed at run start and no signal is newer than the run.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import case, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mii_engine.db.tables import SubjectRow
from mii_engine.models.common import utc_now


class SubjectRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert(self, *, subject_id: UUID, name_en: str,
                     population: int | None = None,
                     rank_eligible: bool = True) -> SubjectRow:
        """Register a subject or update its identity fields. Cache untouched."""
        now = utc_now()
        row = await self.get(subject_id)
        if row is None:
            row = SubjectRow(
                subject_id=subject_id, name_en=name_en,
                population=population, rank_eligible=rank_eligible,
                is_dirty=False, dirty_version=0,
                created_at=now, updated_at=now,
            )
            self._session.add(row)
        else:
            row.name_en = name_en
            row.population = population
            row.rank_eligible = rank_eligible
            row.updated_at = now
        await self._session.flush()
        return row

    async def get(self, subject_id: UUID) -> SubjectRow | None:
        return await self._session.get(
            SubjectRow, subject_id, populate_existing=True,
        )

    async def list_all(self) -> list[SubjectRow]:
        result = await self._session.execute(
            select(SubjectRow).order_by(SubjectRow.subject_id)
        )
        return list(result.scalars().all())

    async def list_by_ids(self, subject_ids: list[UUID]) -> list[SubjectRow]:
        if not subject_ids:
            return []
        result = await self._session.execute(
            select(SubjectRow)
            .where(SubjectRow.subject_id.in_(subject_ids))
            .order_by(SubjectRow.subject_id)
        )
        return list(result.scalars().all())

    async def list_leaderboard(self, *, limit: int = 100, offset: int = 0) -> list[SubjectRow]:
        """Ranked subjects first (by rank), then unranked by id."""
        result = await self._session.execute(
            select(SubjectRow)
            .order_by(
                SubjectRow.current_rank.is_(None),
                SubjectRow.current_rank,
                SubjectRow.subject_id,
            )
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Staleness
    # ------------------------------------------------------------------

    async def mark_dirty(self, subject_id: UUID, at: datetime) -> bool:
        """Record an upstream change. Returns False if the subject is unknown."""
        at_value = literal(at, type_=SubjectRow.dirty_since.type)
        result = await self._session.execute(
            update(SubjectRow)
            .where(SubjectRow.subject_id == subject_id)
            .values(
                is_dirty=True,
                dirty_since=case(
                    (SubjectRow.dirty_since.is_(None), at_value),
                    (SubjectRow.dirty_since > at_value, at_value),
                    else_=SubjectRow.dirty_since,
                ),
                last_dirty_at=case(
                    (SubjectRow.last_dirty_at.is_(None), at_value),
                    (SubjectRow.last_dirty_at < at_value, at_value),
                    else_=SubjectRow.last_dirty_at,
                ),
                dirty_version=SubjectRow.dirty_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_dirty_ids(self) -> list[UUID]:
        result = await self._session.execute(
            select(SubjectRow.subject_id)
            .where(SubjectRow.is_dirty.is_(True))
            .order_by(SubjectRow.subject_id)
        )
        return list(result.scalars().all())

    async def dirty_versions(self, subject_ids: list[UUID]) -> dict[UUID, int]:
        if not subject_ids:
            return {}
        result = await self._session.execute(
            select(SubjectRow.subject_id, SubjectRow.dirty_version)
            .where(SubjectRow.subject_id.in_(subject_ids))
        )
        return {sid: version for sid, version in result.all()}

    async def clear_dirty_if_unchanged(self, subject_id: UUID, *,
                                       run_started_at: datetime,
                                       seen_version: int) -> bool:
        """Compare-and-clear. Returns True if the flag was cleared."""
        result = await self._session.execute(
            update(SubjectRow)
            .where(SubjectRow.subject_id == subject_id)
            .where(SubjectRow.dirty_version == seen_version)
            .where(or_(
                SubjectRow.last_dirty_at.is_(None),
                SubjectRow.last_dirty_at <= run_started_at,
            ))
            .values(is_dirty=False, dirty_since=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    async def update_cache(self, subject_id: UUID, *, score: int, rank: int | None,
                           computed_at: datetime, run_id: UUID) -> bool:
        """Point the cache at a newly published result.

        previous_rank takes the rank being replaced (SET reads old values).
        """
        result = await self._session.execute(
            update(SubjectRow)
            .where(SubjectRow.subject_id == subject_id)
            .values(
                previous_rank=SubjectRow.current_rank,
                current_score=score,
                current_rank=rank,
                last_computed_at=computed_at,
                last_run_id=run_id,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_rank(self, subject_id: UUID, rank: int | None) -> bool:
        """Rank-only refresh for a subject whose score did not change."""
        result = await self._session.execute(
            update(SubjectRow)
            .where(SubjectRow.subject_id == subject_id)
            .values(previous_rank=SubjectRow.current_rank, current_rank=rank)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
