"""FastAPI index run endpoints.

POST /v1/mii/runs              - trigger a full recomputation (202 / 409)
POST /v1/mii/runs/subset       - trigger a subset recomputation (202 / 409)
GET  /v1/mii/runs              - recent runs, newest first
GET  /v1/mii/runs/active       - the run holding the lock, if any
GET  /v1/mii/runs/latest       - latest run that went through computation
GET  /v1/mii/runs/{run_id}     - one run with its failure report

Triggers are accepted or rejected synchronously; an accepted run executes
after the response is sent. A trigger arriving while a run is active is
rejected with 409 and never queued.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from mii_engine.api.dependencies import get_run_repo, get_scheduler
from mii_engine.engine.scheduler import (
    Busy,
    FullTrigger,
    RunScheduler,
    SubsetTrigger,
    Trigger,
)
from mii_engine.models.common import RunStatus
from mii_engine.models.run import RunSummary
from mii_engine.repositories.runs import RunRepository, run_row_to_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/mii/runs", tags=["runs"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------


class SubsetRunRequest(BaseModel):
    dirty_only: bool = True
    subject_ids: list[UUID] = Field(default_factory=list)


class RunAcceptedResponse(BaseModel):
    run_id: str
    status: str
    subject_ids: list[str]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _execute_run(scheduler: RunScheduler, run_id: UUID) -> None:
    summary = await scheduler.execute(run_id)
    logger.info("Background run %s ended %s", run_id, summary.status)


async def _accept(trigger: Trigger, scheduler: RunScheduler,
                  background_tasks: BackgroundTasks) -> RunAcceptedResponse:
    try:
        outcome = await scheduler.submit(trigger)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    if isinstance(outcome, Busy):
        raise HTTPException(
            status_code=409,
            detail={
                "status": "BUSY",
                "message": "A run is already in progress.",
                "active_run_id": str(outcome.active_run_id) if outcome.active_run_id else None,
                "aborted_run_id": str(outcome.aborted_run_id),
            },
        )

    background_tasks.add_task(_execute_run, scheduler, outcome.run_id)
    return RunAcceptedResponse(
        run_id=str(outcome.run_id),
        status=RunStatus.RUNNING.value,
        subject_ids=[str(sid) for sid in outcome.subject_ids],
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("", status_code=202, response_model=RunAcceptedResponse)
async def trigger_full_run(
    background_tasks: BackgroundTasks,
    scheduler: RunScheduler = Depends(get_scheduler),
) -> RunAcceptedResponse:
    """Recompute every subject."""
    return await _accept(FullTrigger(), scheduler, background_tasks)


@router.post("/subset", status_code=202, response_model=RunAcceptedResponse)
async def trigger_subset_run(
    body: SubsetRunRequest,
    background_tasks: BackgroundTasks,
    scheduler: RunScheduler = Depends(get_scheduler),
) -> RunAcceptedResponse:
    """Recompute dirty subjects (default) or an explicit list of subjects."""
    trigger = SubsetTrigger(dirty_only=body.dirty_only, subject_ids=tuple(body.subject_ids))
    return await _accept(trigger, scheduler, background_tasks)


@router.get("", response_model=list[RunSummary])
async def list_runs(
    limit: int = Query(default=20, ge=1, le=200),
    repo: RunRepository = Depends(get_run_repo),
) -> list[RunSummary]:
    return [run_row_to_summary(row) for row in await repo.list_recent(limit)]


@router.get("/active", response_model=RunSummary | None)
async def get_active_run(
    scheduler: RunScheduler = Depends(get_scheduler),
) -> RunSummary | None:
    return await scheduler.active_run()


@router.get("/latest", response_model=RunSummary)
async def get_latest_run(
    scheduler: RunScheduler = Depends(get_scheduler),
) -> RunSummary:
    summary = await scheduler.latest_run()
    if summary is None:
        raise HTTPException(status_code=404, detail="No completed run yet.")
    return summary


@router.get("/{run_id}", response_model=RunSummary)
async def get_run(
    run_id: UUID,
    repo: RunRepository = Depends(get_run_repo),
) -> RunSummary:
    row = await repo.get(run_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found.")
    return run_row_to_summary(row)
