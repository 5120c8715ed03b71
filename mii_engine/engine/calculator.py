"""Score calculator - weighted composite of normalized dimension values.

overall = sum(weight_i * value_i), rounded to an integer with ROUND_HALF_UP.
Arithmetic runs in Decimal so that x.5 boundaries round the same way on
every platform; the per-dimension breakdown is passed through unrounded.

Pure and deterministic - no I/O.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal
from uuid import UUID

from mii_engine.models.common import Trend
from mii_engine.models.dimension import RegistrySnapshot
from mii_engine.models.run import DimensionScore

# Float noise in weights (e.g. 1/3) is squashed at this precision before the
# integer rounding so 66.4999999999 and 66.5 do not diverge.
_NOISE_PRECISION = Decimal("0.000001")
_INTEGER = Decimal("1")
_HIGHLIGHT_COUNT = 2


def _to_decimal(value: float) -> Decimal:
    return Decimal(str(value))


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(_INTEGER, rounding=ROUND_HALF_UP))


def weighted_overall(values: dict[str, float], weights: dict[str, float]) -> int:
    """Composite score for one subject.

    Dimensions missing from ``values`` contribute 0.
    """
    total = sum(
        (_to_decimal(weight) * _to_decimal(values.get(code, 0.0))
         for code, weight in weights.items()),
        Decimal("0"),
    )
    return round_half_up(total.quantize(_NOISE_PRECISION, rounding=ROUND_HALF_EVEN))


def determine_trend(score: int, previous: int | None, band: int) -> Trend:
    """UP/DOWN when the score moved by more than ``band`` points."""
    if previous is None:
        return Trend.STABLE
    if score > previous + band:
        return Trend.UP
    if score < previous - band:
        return Trend.DOWN
    return Trend.STABLE


def highlights(dimensions: list[DimensionScore]) -> tuple[list[str], list[str]]:
    """(strengths, improvement areas): top and bottom dimensions by value."""
    best_first = sorted(dimensions, key=lambda d: (-d.value, d.code))
    worst_first = sorted(dimensions, key=lambda d: (d.value, d.code))
    return (
        [d.code for d in best_first[:_HIGHLIGHT_COUNT]],
        [d.code for d in worst_first[:_HIGHLIGHT_COUNT]],
    )


@dataclass(frozen=True)
class SubjectScore:
    """Outcome of scoring one subject inside a run, before ranking."""

    subject_id: UUID
    overall_score: int
    dimension_scores: dict[str, DimensionScore]
    weights: dict[str, float]
    trend: Trend
    strengths: list[str] = field(default_factory=list)
    improvement_areas: list[str] = field(default_factory=list)
    defaulted_dimensions: list[str] = field(default_factory=list)

    @property
    def low_confidence(self) -> bool:
        return bool(self.defaulted_dimensions)


class ScoreCalculator:
    def __init__(self, trend_band: int = 2) -> None:
        self._trend_band = trend_band

    def compute(
        self,
        subject_id: UUID,
        dimensions: list[DimensionScore],
        snapshot: RegistrySnapshot,
        previous_score: int | None = None,
    ) -> SubjectScore:
        weights = snapshot.weights
        by_code = {d.code: d for d in dimensions}
        overall = weighted_overall({c: d.value for c, d in by_code.items()}, weights)
        strengths, improvement_areas = highlights(dimensions)

        return SubjectScore(
            subject_id=subject_id,
            overall_score=overall,
            dimension_scores=by_code,
            weights=dict(weights),
            trend=determine_trend(overall, previous_score, self._trend_band),
            strengths=strengths,
            improvement_areas=improvement_areas,
            defaulted_dimensions=sorted(c for c, d in by_code.items() if d.defaulted),
        )
