"""Dimension models - indicator contracts, registry entries, normalized snapshot."""

from typing import Any
from uuid import UUID

from pydantic import Field, field_validator, model_validator

from mii_engine.models.common import (
    AggregationKind,
    MIIBase,
    UTCTimestamp,
    UUIDv7,
    Weight,
    new_uuid7,
    utc_now,
)


class Indicator(MIIBase, frozen=True):
    """Extraction contract for one indicator of a dimension.

    ``source`` names a declared signal source; ``aggregation`` decides how
    the matching records collapse to a value on the 0-100 scale.
    """

    code: str = Field(..., min_length=1, max_length=100)
    source: str = Field(..., min_length=1, max_length=100)
    aggregation: AggregationKind
    weight: Weight = 1.0
    value_field: str | None = Field(
        default=None, description="Numeric attribute averaged by AVERAGE.",
    )
    coverage_fields: list[str] = Field(
        default_factory=list, description="Attributes checked by FIELD_COVERAGE.",
    )
    where: dict[str, Any] = Field(
        default_factory=dict,
        description="Equality filter; a list value means 'one of'.",
    )
    require_fields: list[str] = Field(
        default_factory=list, description="Attributes that must be truthy.",
    )
    points_per_record: float = Field(default=1.0, ge=0.0)
    per_capita: bool = Field(
        default=False, description="COUNT_RATE per 100,000 population.",
    )
    distinct_field: str | None = Field(
        default=None, description="COUNT_RATE counts distinct values of this attribute.",
    )

    @model_validator(mode="after")
    def _check_contract(self) -> "Indicator":
        if self.aggregation == AggregationKind.AVERAGE and not self.value_field:
            raise ValueError(f"Indicator {self.code}: AVERAGE requires 'value_field'.")
        if self.aggregation == AggregationKind.FIELD_COVERAGE and not self.coverage_fields:
            raise ValueError(f"Indicator {self.code}: FIELD_COVERAGE requires 'coverage_fields'.")
        return self


def _check_indicators(indicators: list[Indicator]) -> list[Indicator]:
    if not indicators:
        raise ValueError("A dimension needs at least one indicator.")
    if sum(ind.weight for ind in indicators) <= 0.0:
        raise ValueError("Indicator weights must not all be zero.")
    codes = [ind.code for ind in indicators]
    if len(codes) != len(set(codes)):
        raise ValueError("Indicator codes must be unique within a dimension.")
    return indicators


class DimensionCreate(MIIBase):
    """Payload for adding a dimension to the registry."""

    code: str = Field(..., min_length=1, max_length=50)
    name_en: str = Field(..., min_length=1, max_length=255)
    name_ar: str = ""
    description: str = ""
    weight: Weight
    is_active: bool = True
    sort_order: int = 0
    indicators: list[Indicator]

    @field_validator("code")
    @classmethod
    def _upper_code(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("indicators")
    @classmethod
    def _indicators(cls, value: list[Indicator]) -> list[Indicator]:
        return _check_indicators(value)


class DimensionUpdate(MIIBase):
    """Partial update. Omitted fields keep their stored values."""

    name_en: str | None = Field(default=None, min_length=1, max_length=255)
    name_ar: str | None = None
    description: str | None = None
    weight: Weight | None = None
    is_active: bool | None = None
    sort_order: int | None = None
    indicators: list[Indicator] | None = None

    @field_validator("indicators")
    @classmethod
    def _indicators(cls, value: list[Indicator] | None) -> list[Indicator] | None:
        if value is None:
            return value
        return _check_indicators(value)


class Dimension(MIIBase, frozen=True):
    """A registry entry as stored (weights are raw, not normalized)."""

    dimension_id: UUIDv7 = Field(default_factory=new_uuid7)
    code: str
    name_en: str
    name_ar: str = ""
    description: str = ""
    weight: Weight
    is_active: bool = True
    sort_order: int = 0
    indicators: list[Indicator]
    created_at: UTCTimestamp = Field(default_factory=utc_now)
    updated_at: UTCTimestamp = Field(default_factory=utc_now)


class WeightedDimension(MIIBase, frozen=True):
    """An active dimension paired with its run-time normalized weight."""

    dimension_id: UUID
    code: str
    name_en: str
    raw_weight: float
    weight: float
    sort_order: int
    indicators: list[Indicator]


class RegistrySnapshot(MIIBase, frozen=True):
    """Active dimensions taken once at run start; read-only for the run."""

    dimensions: list[WeightedDimension]

    @property
    def weights(self) -> dict[str, float]:
        return {d.code: d.weight for d in self.dimensions}

    @property
    def codes(self) -> list[str]:
        return [d.code for d in self.dimensions]
