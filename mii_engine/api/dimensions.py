"""FastAPI dimension registry endpoints.

GET   /v1/mii/dimensions                        - all dimensions (active and inactive)
GET   /v1/mii/dimensions/weights                - active dimensions, normalized weights
POST  /v1/mii/dimensions                        - add a dimension
PATCH /v1/mii/dimensions/{dimension_id}         - partial update
POST  /v1/mii/dimensions/{dimension_id}/deactivate
POST  /v1/mii/dimensions/{dimension_id}/activate

Registry changes apply to the next run; a run in progress keeps the
snapshot it took at start. Historical results are never rewritten.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from mii_engine.api.dependencies import get_dimension_registry
from mii_engine.engine.errors import ConfigurationError
from mii_engine.engine.registry import DimensionRegistry
from mii_engine.models.dimension import (
    Dimension,
    DimensionCreate,
    DimensionUpdate,
    WeightedDimension,
)

router = APIRouter(prefix="/v1/mii/dimensions", tags=["dimensions"])


@router.get("", response_model=list[Dimension])
async def list_dimensions(
    registry: DimensionRegistry = Depends(get_dimension_registry),
) -> list[Dimension]:
    return await registry.list_all()


@router.get("/weights", response_model=list[WeightedDimension])
async def list_active_weights(
    registry: DimensionRegistry = Depends(get_dimension_registry),
) -> list[WeightedDimension]:
    """What the next run would use."""
    try:
        return await registry.list_active()
    except ConfigurationError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post("", status_code=201, response_model=Dimension)
async def add_dimension(
    body: DimensionCreate,
    registry: DimensionRegistry = Depends(get_dimension_registry),
) -> Dimension:
    try:
        return await registry.add(body)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.patch("/{dimension_id}", response_model=Dimension)
async def update_dimension(
    dimension_id: UUID,
    body: DimensionUpdate,
    registry: DimensionRegistry = Depends(get_dimension_registry),
) -> Dimension:
    try:
        return await registry.update(dimension_id, body)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/{dimension_id}/deactivate", response_model=Dimension)
async def deactivate_dimension(
    dimension_id: UUID,
    registry: DimensionRegistry = Depends(get_dimension_registry),
) -> Dimension:
    try:
        return await registry.deactivate(dimension_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/{dimension_id}/activate", response_model=Dimension)
async def activate_dimension(
    dimension_id: UUID,
    registry: DimensionRegistry = Depends(get_dimension_registry),
) -> Dimension:
    try:
        return await registry.activate(dimension_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
