"""Dimension registry - configuration store with run-time weight normalization.

Weights are stored raw. Normalization is computed fresh for every run from
whatever is active at that instant, so deactivating a dimension takes effect
on the next run without rewriting the others.
"""

import logging
from uuid import UUID

from mii_engine.engine.errors import ConfigurationError
from mii_engine.models.dimension import (
    Dimension,
    DimensionCreate,
    DimensionUpdate,
    RegistrySnapshot,
    WeightedDimension,
)
from mii_engine.repositories.dimensions import DimensionRepository, row_to_dimension

logger = logging.getLogger(__name__)

WEIGHT_EPSILON = 1e-6


def normalize_weights(dimensions: list[Dimension]) -> RegistrySnapshot:
    """Build the run snapshot from the active dimensions.

    Each active weight is divided by the active sum. Raises
    ConfigurationError when nothing is active or the sum is zero.
    """
    active = sorted(
        (d for d in dimensions if d.is_active),
        key=lambda d: (d.sort_order, d.code),
    )
    if not active:
        raise ConfigurationError("No active dimensions: cannot compute the index.")

    total = sum(d.weight for d in active)
    if total <= 0.0:
        raise ConfigurationError(
            "Active dimension weights sum to zero and cannot be normalized."
        )
    if abs(total - 1.0) > WEIGHT_EPSILON:
        logger.info(
            "Normalizing %d active dimension weights (stored sum %.6f)",
            len(active), total,
        )

    return RegistrySnapshot(
        dimensions=[
            WeightedDimension(
                dimension_id=d.dimension_id,
                code=d.code,
                name_en=d.name_en,
                raw_weight=d.weight,
                weight=d.weight / total,
                sort_order=d.sort_order,
                indicators=d.indicators,
            )
            for d in active
        ]
    )


class DimensionRegistry:
    """Registry operations over a DimensionRepository (one session)."""

    def __init__(self, repo: DimensionRepository) -> None:
        self._repo = repo

    async def list_all(self) -> list[Dimension]:
        return [row_to_dimension(row) for row in await self._repo.list_all()]

    async def list_active(self) -> list[WeightedDimension]:
        """Active dimensions with their normalized weights."""
        return (await self.snapshot()).dimensions

    async def snapshot(self) -> RegistrySnapshot:
        rows = await self._repo.list_active()
        return normalize_weights([row_to_dimension(row) for row in rows])

    async def add(self, payload: DimensionCreate) -> Dimension:
        if await self._repo.get_by_code(payload.code) is not None:
            raise ValueError(f"Dimension code '{payload.code}' already exists.")
        dimension = Dimension(**payload.model_dump())
        row = await self._repo.create(dimension)
        logger.info("Added dimension %s (weight %.4f)", row.code, row.weight)
        return row_to_dimension(row)

    async def update(self, dimension_id: UUID, payload: DimensionUpdate) -> Dimension:
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        if "indicators" in changes:
            changes["indicators"] = [
                ind.model_dump(mode="json") for ind in payload.indicators or []
            ]
        row = await self._repo.update(dimension_id, changes)
        if row is None:
            raise LookupError(f"Dimension {dimension_id} not found.")
        logger.info("Updated dimension %s: %s", row.code, sorted(changes))
        return row_to_dimension(row)

    async def deactivate(self, dimension_id: UUID) -> Dimension:
        return await self.update(dimension_id, DimensionUpdate(is_active=False))

    async def activate(self, dimension_id: UUID) -> Dimension:
        return await self.update(dimension_id, DimensionUpdate(is_active=True))
