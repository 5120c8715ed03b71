"""FastAPI source record endpoints - the write path of upstream entities.

PUT    /v1/mii/sources/{source}/records/{record_id}  - create / replace a record
DELETE /v1/mii/sources/{source}/records/{record_id}  - soft-delete a record

Each write marks the affected subject(s) dirty in the same transaction, so
a record change and its invalidation commit or roll back together.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from mii_engine.api.dependencies import get_source_record_repo, get_subject_repo
from mii_engine.config.settings import Settings, get_settings
from mii_engine.models.common import utc_now
from mii_engine.repositories.sources import SourceRecordRepository
from mii_engine.repositories.subjects import SubjectRepository

router = APIRouter(prefix="/v1/mii/sources", tags=["sources"])


class PutRecordRequest(BaseModel):
    subject_id: UUID
    attributes: dict = Field(default_factory=dict)


class RecordResponse(BaseModel):
    record_id: str
    source: str
    subject_id: str
    is_deleted: bool
    invalidated_subject_ids: list[str]


async def _invalidate(subjects: SubjectRepository, subject_ids: list[UUID]) -> None:
    now = utc_now()
    for subject_id in subject_ids:
        if not await subjects.mark_dirty(subject_id, now):
            raise HTTPException(status_code=404, detail=f"Subject {subject_id} not found.")


@router.put("/{source}/records/{record_id}", response_model=RecordResponse)
async def put_record(
    source: str,
    record_id: UUID,
    body: PutRecordRequest,
    records: SourceRecordRepository = Depends(get_source_record_repo),
    subjects: SubjectRepository = Depends(get_subject_repo),
    settings: Settings = Depends(get_settings),
) -> RecordResponse:
    if source not in settings.MII_DECLARED_SOURCES:
        raise HTTPException(status_code=422, detail=f"Source '{source}' is not declared.")
    try:
        row, moved_from = await records.upsert(
            record_id=record_id, source=source,
            subject_id=body.subject_id, attributes=body.attributes,
        )
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    affected = [body.subject_id] + ([moved_from] if moved_from is not None else [])
    await _invalidate(subjects, affected)
    return RecordResponse(
        record_id=str(row.record_id),
        source=row.source,
        subject_id=str(row.subject_id),
        is_deleted=row.is_deleted,
        invalidated_subject_ids=[str(sid) for sid in affected],
    )


@router.delete("/{source}/records/{record_id}", response_model=RecordResponse)
async def delete_record(
    source: str,
    record_id: UUID,
    records: SourceRecordRepository = Depends(get_source_record_repo),
    subjects: SubjectRepository = Depends(get_subject_repo),
) -> RecordResponse:
    row = await records.soft_delete(record_id=record_id, source=source)
    if row is None:
        raise HTTPException(
            status_code=404, detail=f"Record {record_id} not found in source '{source}'.",
        )
    await _invalidate(subjects, [row.subject_id])
    return RecordResponse(
        record_id=str(row.record_id),
        source=row.source,
        subject_id=str(row.subject_id),
        is_deleted=True,
        invalidated_subject_ids=[str(row.subject_id)],
    )
