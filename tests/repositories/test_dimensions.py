"""Tests for DimensionRepository ordering and partial updates."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from mii_engine.models.common import AggregationKind, new_uuid7
from mii_engine.models.dimension import Dimension, Indicator
from mii_engine.repositories.dimensions import DimensionRepository, row_to_dimension


def _dimension(code: str, *, sort_order: int = 0, is_active: bool = True) -> Dimension:
    return Dimension(
        code=code, name_en=code.title(), weight=0.5, is_active=is_active,
        sort_order=sort_order,
        indicators=[Indicator(code="count", source="pilots",
                              aggregation=AggregationKind.COUNT_RATE, points_per_record=20)],
    )


class TestDimensionRepository:
    @pytest.mark.anyio
    async def test_round_trips_indicators(self, db_session: AsyncSession) -> None:
        repo = DimensionRepository(db_session)
        created = await repo.create(_dimension("IMPACT"))

        dimension = row_to_dimension(await repo.get_by_code("IMPACT"))

        assert dimension.dimension_id == created.dimension_id
        assert dimension.indicators[0].aggregation == AggregationKind.COUNT_RATE
        assert dimension.indicators[0].points_per_record == 20

    @pytest.mark.anyio
    async def test_list_ordering_and_active_filter(self, db_session: AsyncSession) -> None:
        repo = DimensionRepository(db_session)
        await repo.create(_dimension("ZETA", sort_order=0))
        await repo.create(_dimension("ALPHA", sort_order=1))
        await repo.create(_dimension("BETA", sort_order=0, is_active=False))

        assert [r.code for r in await repo.list_all()] == ["BETA", "ZETA", "ALPHA"]
        assert [r.code for r in await repo.list_active()] == ["ZETA", "ALPHA"]

    @pytest.mark.anyio
    async def test_update_unknown_returns_none(self, db_session: AsyncSession) -> None:
        repo = DimensionRepository(db_session)
        assert await repo.update(new_uuid7(), {"weight": 0.1}) is None

    @pytest.mark.anyio
    async def test_update_sets_fields(self, db_session: AsyncSession) -> None:
        repo = DimensionRepository(db_session)
        created = await repo.create(_dimension("CULTURE"))
        row = await repo.update(created.dimension_id, {"weight": 0.3, "is_active": False})
        assert row.weight == 0.3
        assert row.is_active is False
