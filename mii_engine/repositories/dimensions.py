"""Dimension registry repository.

Repos take AsyncSession, call add()/flush() only - never commit().
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mii_engine.db.tables import DimensionRow
from mii_engine.models.common import utc_now
from mii_engine.models.dimension import Dimension


def row_to_dimension(row: DimensionRow) -> Dimension:
    return Dimension(
        dimension_id=row.dimension_id,
        code=row.code,
        name_en=row.name_en,
        name_ar=row.name_ar,
        description=row.description,
        weight=row.weight,
        is_active=row.is_active,
        sort_order=row.sort_order,
        indicators=row.indicators,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class DimensionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, dimension: Dimension) -> DimensionRow:
        row = DimensionRow(
            dimension_id=dimension.dimension_id,
            code=dimension.code,
            name_en=dimension.name_en,
            name_ar=dimension.name_ar,
            description=dimension.description,
            weight=dimension.weight,
            is_active=dimension.is_active,
            sort_order=dimension.sort_order,
            indicators=[ind.model_dump(mode="json") for ind in dimension.indicators],
            created_at=dimension.created_at,
            updated_at=dimension.updated_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, dimension_id: UUID) -> DimensionRow | None:
        return await self._session.get(DimensionRow, dimension_id)

    async def get_by_code(self, code: str) -> DimensionRow | None:
        result = await self._session.execute(
            select(DimensionRow).where(DimensionRow.code == code)
        )
        return result.scalar_one_or_none()

    async def list_all(self) -> list[DimensionRow]:
        result = await self._session.execute(
            select(DimensionRow).order_by(DimensionRow.sort_order, DimensionRow.code)
        )
        return list(result.scalars().all())

    async def list_active(self) -> list[DimensionRow]:
        result = await self._session.execute(
            select(DimensionRow)
            .where(DimensionRow.is_active.is_(True))
            .order_by(DimensionRow.sort_order, DimensionRow.code)
        )
        return list(result.scalars().all())

    async def update(self, dimension_id: UUID, changes: dict) -> DimensionRow | None:
        """Apply already-validated field changes. Returns None if not found."""
        row = await self.get(dimension_id)
        if row is None:
            return None
        for key, value in changes.items():
            setattr(row, key, value)
        row.updated_at = utc_now()
        await self._session.flush()
        return row
