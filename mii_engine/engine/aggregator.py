"""Metric aggregator - raw source records to normalized 0-100 dimension values.

Each dimension carries an extraction contract: a list of indicators, each
naming a source and an aggregation. Indicator values are clamped to the
0-100 scale and combined with the indicator weights (normalized within the
dimension).

Missing data policy:
- AVERAGE, RATIO and FIELD_COVERAGE over zero records are undefined; the
  indicator falls back to 0 and its dimension is flagged as defaulted.
- COUNT_RATE over zero records is a genuine 0.
- An unreachable source (DataSourceError) defaults every indicator reading
  it; other dimensions of the subject are unaffected.

Deterministic - identical records always give identical values.
"""

import logging
import math
from dataclasses import dataclass
from uuid import UUID

from mii_engine.engine.errors import DataSourceError
from mii_engine.engine.sources import SignalSource
from mii_engine.models.common import AggregationKind
from mii_engine.models.dimension import Indicator, RegistrySnapshot, WeightedDimension
from mii_engine.models.run import DimensionScore, IndicatorValue

logger = logging.getLogger(__name__)

SCALE_MIN = 0.0
SCALE_MAX = 100.0
DEFAULT_VALUE = 0.0
# Population assumed when a subject has none on record.
DEFAULT_POPULATION = 100_000
PER_CAPITA_BASE = 100_000


@dataclass(frozen=True)
class SubjectContext:
    """What the engine knows about a subject when a run starts."""

    subject_id: UUID
    rank_eligible: bool
    population: int | None = None
    current_score: int | None = None
    current_rank: int | None = None


def clamp(value: float) -> float:
    return max(SCALE_MIN, min(SCALE_MAX, value))


def _as_number(value: object) -> float | None:
    """Numeric reading of a record field; None for anything non-finite."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            number = float(value.strip())
        else:
            return None
    except (ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _is_present(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict, tuple, set)):
        return bool(value)
    return True


def _matches(record: dict, indicator: Indicator) -> bool:
    for key, expected in indicator.where.items():
        actual = record.get(key)
        if isinstance(expected, list):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return all(_is_present(record.get(f)) for f in indicator.require_fields)


def evaluate_indicator(indicator: Indicator, records: list[dict],
                       population: int | None = None) -> tuple[float | None, int]:
    """Apply one indicator to a subject's records.

    Returns (value, record_count); value is None when the aggregation is
    undefined for the data at hand.
    """
    matched = [r for r in records if _matches(r, indicator)]

    match indicator.aggregation:
        case AggregationKind.AVERAGE:
            numbers = [
                n for n in (_as_number(r.get(indicator.value_field)) for r in matched)
                if n is not None
            ]
            if not numbers:
                return None, 0
            return clamp(sum(numbers) / len(numbers)), len(numbers)

        case AggregationKind.RATIO:
            if not records:
                return None, 0
            return clamp(len(matched) / len(records) * 100.0), len(records)

        case AggregationKind.COUNT_RATE:
            if indicator.distinct_field:
                count = len({
                    str(r.get(indicator.distinct_field)) for r in matched
                    if _is_present(r.get(indicator.distinct_field))
                })
            else:
                count = len(matched)
            rate = float(count)
            if indicator.per_capita:
                rate = count / float(population or DEFAULT_POPULATION) * PER_CAPITA_BASE
            return clamp(rate * indicator.points_per_record), count

        case AggregationKind.FIELD_COVERAGE:
            if not matched:
                return None, 0
            present = sum(
                1 for r in matched for f in indicator.coverage_fields
                if _is_present(r.get(f))
            )
            total = len(matched) * len(indicator.coverage_fields)
            return clamp(present / total * 100.0), len(matched)

    raise ValueError(f"Unsupported aggregation {indicator.aggregation}")


class MetricAggregator:
    """Produces one DimensionScore per active dimension for a subject."""

    def __init__(self, source: SignalSource) -> None:
        self._source = source

    async def aggregate(self, subject: SubjectContext,
                        snapshot: RegistrySnapshot) -> list[DimensionScore]:
        fetched: dict[str, list[dict] | DataSourceError] = {}
        return [
            await self._aggregate_dimension(subject, dimension, fetched)
            for dimension in snapshot.dimensions
        ]

    async def _load(self, source: str, subject_id: UUID,
                    fetched: dict[str, list[dict] | DataSourceError]) -> list[dict]:
        if source not in fetched:
            try:
                fetched[source] = await self._source.fetch(source, subject_id)
            except DataSourceError as exc:
                fetched[source] = exc
        outcome = fetched[source]
        if isinstance(outcome, DataSourceError):
            raise outcome
        return outcome

    async def _aggregate_dimension(
        self,
        subject: SubjectContext,
        dimension: WeightedDimension,
        fetched: dict[str, list[dict] | DataSourceError],
    ) -> DimensionScore:
        weight_total = sum(ind.weight for ind in dimension.indicators)
        values: list[IndicatorValue] = []
        reasons: list[str] = []

        for indicator in dimension.indicators:
            share = indicator.weight / weight_total
            try:
                records = await self._load(indicator.source, subject.subject_id, fetched)
            except DataSourceError as exc:
                logger.warning(
                    "Dimension %s indicator %s defaulted for subject %s: %s",
                    dimension.code, indicator.code, subject.subject_id, exc,
                )
                reasons.append(f"{indicator.code}: source '{indicator.source}' unavailable")
                values.append(IndicatorValue(
                    code=indicator.code, value=DEFAULT_VALUE, weight=share, defaulted=True,
                ))
                continue

            value, count = evaluate_indicator(indicator, records, subject.population)
            if value is None:
                reasons.append(f"{indicator.code}: no data")
                values.append(IndicatorValue(
                    code=indicator.code, value=DEFAULT_VALUE, weight=share, defaulted=True,
                ))
            else:
                values.append(IndicatorValue(
                    code=indicator.code, value=value, weight=share, record_count=count,
                ))

        return DimensionScore(
            code=dimension.code,
            value=clamp(sum(v.value * v.weight for v in values)),
            weight=dimension.weight,
            defaulted=bool(reasons),
            reason="; ".join(reasons) or None,
            indicators=values,
        )
