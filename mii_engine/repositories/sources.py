"""Source record repository - raw upstream entities read by extraction contracts."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mii_engine.db.tables import SourceRecordRow
from mii_engine.models.common import utc_now


class SourceRecordRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, record_id: UUID) -> SourceRecordRow | None:
        return await self._session.get(SourceRecordRow, record_id)

    async def upsert(self, *, record_id: UUID, source: str, subject_id: UUID,
                     attributes: dict) -> tuple[SourceRecordRow, UUID | None]:
        """Insert or replace a record.

        Returns the row and the subject it previously belonged to when the
        record moved between subjects (both need invalidating).
        """
        now = utc_now()
        moved_from: UUID | None = None
        row = await self.get(record_id)
        if row is None:
            row = SourceRecordRow(
                record_id=record_id, source=source, subject_id=subject_id,
                attributes=attributes, is_deleted=False, updated_at=now,
            )
            self._session.add(row)
        else:
            if row.source != source:
                raise ValueError(
                    f"Record {record_id} belongs to source '{row.source}', not '{source}'."
                )
            if row.subject_id != subject_id:
                moved_from = row.subject_id
            row.subject_id = subject_id
            row.attributes = attributes
            row.is_deleted = False
            row.updated_at = now
        await self._session.flush()
        return row, moved_from

    async def soft_delete(self, *, record_id: UUID, source: str) -> SourceRecordRow | None:
        row = await self.get(record_id)
        if row is None or row.source != source or row.is_deleted:
            return None
        row.is_deleted = True
        row.updated_at = utc_now()
        await self._session.flush()
        return row

    async def list_attributes(self, *, source: str, subject_id: UUID) -> list[dict]:
        result = await self._session.execute(
            select(SourceRecordRow.attributes)
            .where(SourceRecordRow.source == source)
            .where(SourceRecordRow.subject_id == subject_id)
            .where(SourceRecordRow.is_deleted.is_(False))
            .order_by(SourceRecordRow.record_id)
        )
        return [dict(attrs) for attrs in result.scalars().all()]
