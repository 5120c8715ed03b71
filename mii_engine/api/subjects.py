"""FastAPI subject endpoints - cached standings, history, staleness hook.

GET  /v1/mii/subjects                         - leaderboard (cached score/rank)
GET  /v1/mii/subjects/dirty                   - ids of subjects awaiting a run
GET  /v1/mii/subjects/{subject_id}            - one subject's cached standing
GET  /v1/mii/subjects/{subject_id}/history    - immutable results, newest first
PUT  /v1/mii/subjects/{subject_id}            - register / update identity fields
POST /v1/mii/subjects/{subject_id}/dirty      - mark stale (upstream change)

Reads never trigger computation; they serve whatever the last publish left.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from mii_engine.api.dependencies import get_score_result_repo, get_subject_repo
from mii_engine.db.tables import ScoreResultRow, SubjectRow
from mii_engine.models.common import as_utc, utc_now
from mii_engine.models.run import ScoreResult, SubjectCache
from mii_engine.repositories.runs import ScoreResultRepository
from mii_engine.repositories.subjects import SubjectRepository

router = APIRouter(prefix="/v1/mii/subjects", tags=["subjects"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------


class UpsertSubjectRequest(BaseModel):
    name_en: str = Field(..., min_length=1, max_length=255)
    population: int | None = Field(default=None, ge=0)
    rank_eligible: bool = True


class SubjectHistoryResponse(BaseModel):
    subject_id: str
    total: int
    items: list[ScoreResult]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_cache(row: SubjectRow) -> SubjectCache:
    return SubjectCache(
        subject_id=row.subject_id,
        name_en=row.name_en,
        rank_eligible=row.rank_eligible,
        current_score=row.current_score,
        current_rank=row.current_rank,
        previous_rank=row.previous_rank,
        is_dirty=row.is_dirty,
        dirty_since=as_utc(row.dirty_since),
        last_computed_at=as_utc(row.last_computed_at),
        last_run_id=row.last_run_id,
    )


def _to_result(row: ScoreResultRow) -> ScoreResult:
    return ScoreResult(
        result_id=row.result_id,
        run_id=row.run_id,
        subject_id=row.subject_id,
        overall_score=row.overall_score,
        dimension_scores=row.dimension_scores,
        weights=row.weights,
        rank=row.rank,
        previous_rank=row.previous_rank,
        trend=row.trend,
        strengths=row.strengths,
        improvement_areas=row.improvement_areas,
        defaulted_dimensions=row.defaulted_dimensions,
        low_confidence=row.low_confidence,
        computed_at=as_utc(row.computed_at),
    )


async def _get_or_404(repo: SubjectRepository, subject_id: UUID) -> SubjectRow:
    row = await repo.get(subject_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Subject {subject_id} not found.")
    return row


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=list[SubjectCache])
async def list_subjects(
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    repo: SubjectRepository = Depends(get_subject_repo),
) -> list[SubjectCache]:
    rows = await repo.list_leaderboard(limit=limit, offset=offset)
    return [_to_cache(row) for row in rows]


@router.get("/dirty", response_model=list[UUID])
async def list_dirty_subjects(
    repo: SubjectRepository = Depends(get_subject_repo),
) -> list[UUID]:
    return await repo.list_dirty_ids()


@router.get("/{subject_id}", response_model=SubjectCache)
async def get_subject(
    subject_id: UUID,
    repo: SubjectRepository = Depends(get_subject_repo),
) -> SubjectCache:
    return _to_cache(await _get_or_404(repo, subject_id))


@router.get("/{subject_id}/history", response_model=SubjectHistoryResponse)
async def get_subject_history(
    subject_id: UUID,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    repo: SubjectRepository = Depends(get_subject_repo),
    results: ScoreResultRepository = Depends(get_score_result_repo),
) -> SubjectHistoryResponse:
    await _get_or_404(repo, subject_id)
    rows = await results.list_by_subject(subject_id, limit=limit, offset=offset)
    return SubjectHistoryResponse(
        subject_id=str(subject_id),
        total=await results.count_by_subject(subject_id),
        items=[_to_result(row) for row in rows],
    )


@router.put("/{subject_id}", response_model=SubjectCache)
async def upsert_subject(
    subject_id: UUID,
    body: UpsertSubjectRequest,
    repo: SubjectRepository = Depends(get_subject_repo),
) -> SubjectCache:
    """New subjects, and changes to scoring inputs, mark the subject dirty."""
    existing = await repo.get(subject_id)
    changed = existing is None or (
        existing.population != body.population
        or existing.rank_eligible != body.rank_eligible
    )
    await repo.upsert(
        subject_id=subject_id, name_en=body.name_en,
        population=body.population, rank_eligible=body.rank_eligible,
    )
    if changed:
        await repo.mark_dirty(subject_id, utc_now())
    return _to_cache(await _get_or_404(repo, subject_id))


@router.post("/{subject_id}/dirty", response_model=SubjectCache)
async def mark_subject_dirty(
    subject_id: UUID,
    repo: SubjectRepository = Depends(get_subject_repo),
) -> SubjectCache:
    if not await repo.mark_dirty(subject_id, utc_now()):
        raise HTTPException(status_code=404, detail=f"Subject {subject_id} not found.")
    return _to_cache(await _get_or_404(repo, subject_id))
