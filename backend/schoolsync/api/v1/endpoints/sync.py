from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from schoolsync.database import get_db
from schoolsync.exceptions import LedgerError, RunNotFoundError, RunStateError, ScopeError
from schoolsync.scheduler import sync_scheduler
from schoolsync.schemas.sync import (
    PaginatedRunSchools,
    SyncCancelResponse,
    SyncInfoResponse,
    SyncRunDetailResponse,
    SyncRunResponse,
    SyncRunSchoolResponse,
    SyncTriggerRequest,
    SyncTriggerResponse,
)
from schoolsync.services.endpoints import MB_ENDPOINTS_ALL, NEX_ENDPOINTS_ALL
from schoolsync.services.sync_runs import SyncRunService, get_sync_run_service
from schoolsync.utils.audit_logger import create_audit_log

log = logging.getLogger(__name__)
router = APIRouter()


@router.get("/info", response_model=SyncInfoResponse)
async def get_sync_info():
    """Scheduler state and the endpoint steps each source supports."""
    return SyncInfoResponse(
        scheduler_enabled=sync_scheduler.enabled,
        timezone=sync_scheduler.timezone,
        registered_schedules=sync_scheduler.registered_ids(),
        endpoints_mb=list(MB_ENDPOINTS_ALL),
        endpoints_nex=list(NEX_ENDPOINTS_ALL),
    )


@router.get("/runs", response_model=List[SyncRunResponse])
async def list_sync_runs(
    node_id: Optional[str] = None,
    academic_year: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    service: SyncRunService = Depends(get_sync_run_service),
):
    return service.list_runs(node_id=node_id, academic_year=academic_year, status=status_filter, limit=limit)


@router.get("/runs/{run_id}", response_model=SyncRunDetailResponse)
async def get_sync_run(run_id: int, service: SyncRunService = Depends(get_sync_run_service)):
    try:
        return service.get_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/runs/{run_id}/schools", response_model=PaginatedRunSchools)
async def list_sync_run_schools(
    run_id: int,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    service: SyncRunService = Depends(get_sync_run_service),
):
    try:
        rows, total = service.list_run_schools(run_id, offset=offset, limit=limit)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return PaginatedRunSchools(
        data=[SyncRunSchoolResponse.model_validate(row) for row in rows],
        total=total,
        offset=offset,
        limit=limit,
    )


@router.post("/trigger", response_model=SyncTriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    http_request: Request,
    body: SyncTriggerRequest,
    db: Session = Depends(get_db),
    service: SyncRunService = Depends(get_sync_run_service),
):
    """Create a pending run and start it in the background."""
    try:
        result = await service.trigger_run(
            body.to_scope(),
            academic_year=body.academic_year,
            endpoints_mb=body.endpoints_mb,
            endpoints_nex=body.endpoints_nex,
            triggered_by=body.triggered_by,
        )
    except ScopeError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except LedgerError as e:
        log.error(f"Sync trigger failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not create sync run")

    create_audit_log(
        db=db,
        request=http_request,
        action="sync_triggered",
        entity_type="sync_run",
        entity_id=result["run_id"],
        user=body.triggered_by,
        details=body.model_dump(exclude={"triggered_by"}),
    )
    log.info(f"Sync run {result['run_id']} triggered by {body.triggered_by}")
    return result


@router.post("/runs/{run_id}/cancel", response_model=SyncCancelResponse)
async def cancel_sync_run(
    run_id: int,
    http_request: Request,
    cancelled_by: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    service: SyncRunService = Depends(get_sync_run_service),
):
    try:
        result = service.cancel_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except RunStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    create_audit_log(
        db=db,
        request=http_request,
        action="sync_cancelled",
        entity_type="sync_run",
        entity_id=run_id,
        user=cancelled_by,
        details={"result": result["status"]},
    )
    return result
