"""Staleness tracker - which subjects changed upstream since their last run.

mark_dirty is the push hook for every writer of a contributing entity.
Clearing belongs to the publisher and is compare-and-clear: a flag is only
cleared when no signal has landed since the run started (version and
timestamp both unchanged), so an invalidation racing a long run is kept.
"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mii_engine.models.common import utc_now
from mii_engine.repositories.subjects import SubjectRepository

logger = logging.getLogger(__name__)


class StalenessTracker:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def mark_dirty(self, subject_id: UUID, at: datetime | None = None) -> None:
        """Flag a subject as stale. Raises LookupError for unknown subjects."""
        at = at or utc_now()
        async with self._session_factory() as session, session.begin():
            if not await SubjectRepository(session).mark_dirty(subject_id, at):
                raise LookupError(f"Subject {subject_id} not found.")
        logger.debug("Subject %s marked dirty at %s", subject_id, at.isoformat())

    async def list_dirty(self) -> list[UUID]:
        async with self._session_factory() as session:
            return await SubjectRepository(session).list_dirty_ids()

    @staticmethod
    async def clear_resolved(subjects: SubjectRepository, subject_id: UUID, *,
                             run_started_at: datetime, seen_version: int) -> bool:
        """Compare-and-clear inside the caller's publish transaction."""
        cleared = await subjects.clear_dirty_if_unchanged(
            subject_id, run_started_at=run_started_at, seen_version=seen_version,
        )
        if not cleared:
            logger.info(
                "Subject %s stays dirty: invalidated after run start", subject_id,
            )
        return cleared
