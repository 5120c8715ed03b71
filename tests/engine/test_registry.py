"""Tests for the dimension registry and run-time weight normalization."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession
from uuid_extensions import uuid7

from mii_engine.engine.errors import ConfigurationError
from mii_engine.engine.registry import (
    WEIGHT_EPSILON,
    DimensionRegistry,
    normalize_weights,
)
from mii_engine.models.common import AggregationKind
from mii_engine.models.dimension import (
    Dimension,
    DimensionCreate,
    DimensionUpdate,
    Indicator,
)
from mii_engine.repositories.dimensions import DimensionRepository


def _indicator(code: str = "value") -> Indicator:
    return Indicator(code=code, source="metrics",
                     aggregation=AggregationKind.AVERAGE, value_field=code)


def _dimension(code: str, weight: float, *, is_active: bool = True,
               sort_order: int = 0) -> Dimension:
    return Dimension(code=code, name_en=code.title(), weight=weight,
                     is_active=is_active, sort_order=sort_order,
                     indicators=[_indicator()])


def _create(code: str, weight: float, **kwargs) -> DimensionCreate:
    return DimensionCreate(code=code, name_en=code.title(), weight=weight,
                           indicators=[_indicator()], **kwargs)


class TestNormalizeWeights:
    """Active weights are always divided by their current sum."""

    def test_weights_summing_to_one_are_unchanged(self) -> None:
        snapshot = normalize_weights([
            _dimension("A", 0.5), _dimension("B", 0.3), _dimension("C", 0.2),
        ])
        assert snapshot.weights == pytest.approx({"A": 0.5, "B": 0.3, "C": 0.2})

    def test_deactivating_one_of_three_equal_weights(self) -> None:
        snapshot = normalize_weights([
            _dimension("A", 0.33), _dimension("B", 0.33),
            _dimension("C", 0.33, is_active=False),
        ])
        assert snapshot.weights == pytest.approx({"A": 0.5, "B": 0.5})

    def test_under_total_weights_sum_to_one(self) -> None:
        snapshot = normalize_weights([
            _dimension("A", 0.33), _dimension("B", 0.33), _dimension("C", 0.33),
        ])
        assert abs(sum(snapshot.weights.values()) - 1.0) <= WEIGHT_EPSILON

    def test_raw_weight_is_kept_alongside(self) -> None:
        snapshot = normalize_weights([_dimension("A", 0.2), _dimension("B", 0.2)])
        assert [d.raw_weight for d in snapshot.dimensions] == [0.2, 0.2]
        assert [d.weight for d in snapshot.dimensions] == [0.5, 0.5]

    def test_inactive_dimensions_excluded(self) -> None:
        snapshot = normalize_weights([
            _dimension("A", 0.6), _dimension("B", 0.4, is_active=False),
        ])
        assert snapshot.codes == ["A"]
        assert snapshot.weights["A"] == pytest.approx(1.0)

    def test_ordered_by_sort_order_then_code(self) -> None:
        snapshot = normalize_weights([
            _dimension("Z", 0.2, sort_order=1),
            _dimension("B", 0.2, sort_order=2),
            _dimension("A", 0.2, sort_order=2),
        ])
        assert snapshot.codes == ["Z", "A", "B"]

    def test_no_active_dimensions_is_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError, match="No active dimensions"):
            normalize_weights([_dimension("A", 0.5, is_active=False)])

    def test_empty_registry_is_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError):
            normalize_weights([])

    def test_zero_sum_is_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError, match="sum to zero"):
            normalize_weights([_dimension("A", 0.0), _dimension("B", 0.0)])


class TestDimensionValidation:
    """Registry mutations validate weights and extraction contracts."""

    def test_weight_above_one_rejected(self) -> None:
        with pytest.raises(ValueError):
            _create("A", 1.5)

    def test_negative_weight_rejected(self) -> None:
        with pytest.raises(ValueError):
            _create("A", -0.1)

    def test_code_is_upper_cased(self) -> None:
        assert _create(" leadership ", 0.2).code == "LEADERSHIP"

    def test_empty_indicator_list_rejected(self) -> None:
        with pytest.raises(ValueError, match="at least one indicator"):
            DimensionCreate(code="A", name_en="A", weight=0.5, indicators=[])

    def test_duplicate_indicator_codes_rejected(self) -> None:
        with pytest.raises(ValueError, match="unique"):
            DimensionCreate(code="A", name_en="A", weight=0.5,
                            indicators=[_indicator("x"), _indicator("x")])

    def test_average_requires_value_field(self) -> None:
        with pytest.raises(ValueError, match="value_field"):
            Indicator(code="x", source="metrics", aggregation=AggregationKind.AVERAGE)

    def test_field_coverage_requires_fields(self) -> None:
        with pytest.raises(ValueError, match="coverage_fields"):
            Indicator(code="x", source="profile",
                      aggregation=AggregationKind.FIELD_COVERAGE)


class TestDimensionRegistry:
    """Registry operations against the database."""

    @pytest.mark.anyio
    async def test_add_and_list(self, db_session: AsyncSession) -> None:
        registry = DimensionRegistry(DimensionRepository(db_session))
        added = await registry.add(_create("LEADERSHIP", 0.2))
        assert added.code == "LEADERSHIP"
        assert [d.code for d in await registry.list_all()] == ["LEADERSHIP"]

    @pytest.mark.anyio
    async def test_duplicate_code_rejected(self, db_session: AsyncSession) -> None:
        registry = DimensionRegistry(DimensionRepository(db_session))
        await registry.add(_create("A", 0.2))
        with pytest.raises(ValueError, match="already exists"):
            await registry.add(_create("a", 0.3))

    @pytest.mark.anyio
    async def test_deactivate_renormalizes_next_snapshot(self, db_session: AsyncSession) -> None:
        registry = DimensionRegistry(DimensionRepository(db_session))
        a = await registry.add(_create("A", 0.33))
        await registry.add(_create("B", 0.33))
        await registry.add(_create("C", 0.33))

        await registry.deactivate(a.dimension_id)

        snapshot = await registry.snapshot()
        assert snapshot.weights == pytest.approx({"B": 0.5, "C": 0.5})
        # Stored weight untouched
        all_dims = {d.code: d for d in await registry.list_all()}
        assert all_dims["A"].is_active is False
        assert all_dims["B"].weight == pytest.approx(0.33)

    @pytest.mark.anyio
    async def test_activate_restores(self, db_session: AsyncSession) -> None:
        registry = DimensionRegistry(DimensionRepository(db_session))
        a = await registry.add(_create("A", 0.5, is_active=False))
        await registry.add(_create("B", 0.5))
        await registry.activate(a.dimension_id)
        assert (await registry.snapshot()).weights == pytest.approx({"A": 0.5, "B": 0.5})

    @pytest.mark.anyio
    async def test_update_changes_weight_and_indicators(self, db_session: AsyncSession) -> None:
        registry = DimensionRegistry(DimensionRepository(db_session))
        a = await registry.add(_create("A", 0.5))
        updated = await registry.update(a.dimension_id, DimensionUpdate(
            weight=0.25, indicators=[_indicator("y"), _indicator("z")],
        ))
        assert updated.weight == pytest.approx(0.25)
        assert [i.code for i in updated.indicators] == ["y", "z"]

    @pytest.mark.anyio
    async def test_update_missing_raises_lookup(self, db_session: AsyncSession) -> None:
        registry = DimensionRegistry(DimensionRepository(db_session))
        with pytest.raises(LookupError):
            await registry.update(uuid7(), DimensionUpdate(weight=0.1))

    @pytest.mark.anyio
    async def test_snapshot_without_dimensions_fails(self, db_session: AsyncSession) -> None:
        registry = DimensionRegistry(DimensionRepository(db_session))
        with pytest.raises(ConfigurationError):
            await registry.snapshot()
