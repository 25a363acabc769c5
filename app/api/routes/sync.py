"""Sync control API routes.

SECURITY FEATURES:
- Rate limiting on sync triggers (prevents abuse)
- Strict input validation
"""

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.orm import Session

from app.api.services.monitoring_service import MonitoringService
from app.core.database import get_db
from app.core.rate_limit import rate_limit
from app.core.scheduler import cancel_active_sync, get_scheduler, trigger_manual_sync
from app.core.sync.merge import MergeService
from app.core.sync.staging import StagingWriter
from app.core.sync.status import SyncAlreadyRunningError, SyncStatusStore
from app.models.sync import SyncState, SyncType
from app.schemas.sync import (
    MergeResponse,
    SyncHistoryResponse,
    SyncRunOut,
    SyncStartRequest,
    SyncStartResponse,
    SyncStatusResponse,
)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post(
    "/start",
    response_model=SyncStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(rate_limit("sync"))],  # Strict rate limit for sync triggers
)
async def start_sync(payload: SyncStartRequest | None = None):
    """Start a full or incremental sync run in the background."""
    payload = payload or SyncStartRequest()
    try:
        started = await trigger_manual_sync(payload.type, from_page=payload.from_page)
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return SyncStartResponse(**started)


@router.get(
    "/status",
    response_model=SyncStatusResponse,
    dependencies=[Depends(rate_limit("default"))],
)
async def get_sync_status():
    """Get the sync stream status with progress and ETA."""
    return SyncStatusStore().get_status()


@router.post(
    "/reset",
    dependencies=[Depends(rate_limit("sync"))],
)
async def reset_sync():
    """Force-fail a running (or stuck) sync; a finished stream returns to idle."""
    try:
        result = SyncStatusStore().reset()
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    cancelled = cancel_active_sync()
    return {**result, "task_cancelled": cancelled}


@router.get(
    "/history",
    response_model=SyncHistoryResponse,
    dependencies=[Depends(rate_limit("default"))],
)
async def get_sync_history(
    sync_type: SyncType | None = Query(None),
    run_status: SyncState | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Get recent sync runs with aggregate metrics and alerts."""
    monitoring = MonitoringService(db)
    runs = monitoring.get_recent_runs(
        limit=limit,
        status=run_status.value if run_status else None,
        sync_type=sync_type.value if sync_type else None,
    )
    return SyncHistoryResponse(
        runs=[SyncRunOut.model_validate(run) for run in runs],
        metrics=monitoring.get_metrics(sync_type=sync_type.value if sync_type else None),
        alerts=monitoring.check_alerts(),
    )


@router.get(
    "/jobs",
    dependencies=[Depends(rate_limit("default"))],
)
async def get_scheduled_jobs():
    """Get the background jobs registered with the scheduler."""
    scheduler = get_scheduler()
    if not scheduler:
        return {"status": "scheduler_not_initialized", "jobs": []}

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
        })

    return {"status": "running", "jobs": jobs}


@router.post(
    "/merge/{run_id}",
    response_model=MergeResponse,
    dependencies=[Depends(rate_limit("sync"))],
)
async def merge_run(
    run_id: int = Path(..., ge=1),
    archive: bool = Query(False, description="Archive listings the run did not see"),
    db: Session = Depends(get_db),
):
    """Merge a run's staging rows into the catalog (idempotent)."""
    run = MonitoringService(db).get_run(run_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync run {run_id} not found",
        )
    if archive and not (
        run.status == SyncState.COMPLETED.value and run.sync_type == SyncType.FULL.value
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Archiving is only allowed for a completed full run",
        )

    result = MergeService(db).merge_run(run_id, archive_unseen=archive)
    if run.status != SyncState.RUNNING.value:
        StagingWriter(db).clear_run(run_id)
    db.commit()
    return MergeResponse(**result.to_dict())
