"""Schedule endpoints for recurring sync configuration."""

from typing import List
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from schoolsync.constants.sync_status import SchoolSource
from schoolsync.database import get_db
from schoolsync.exceptions import ScopeError
from schoolsync.models.schedule import SyncSchedule
from schoolsync.models.sync_run import SyncRun
from schoolsync.scheduler import next_run_times, sync_scheduler
from schoolsync.schemas.schedule import ScheduleCreate, ScheduleResponse, ScheduleUpdate
from schoolsync.services.endpoints import resolve_endpoints
from schoolsync.utils.audit_logger import create_audit_log

log = logging.getLogger(__name__)
router = APIRouter()


def compute_next_runs(cron: str, count: int = 3) -> List[str]:
    """Compute next N run times from cron expression."""
    try:
        return [t.isoformat() for t in next_run_times(cron, count)]
    except ValueError as e:
        log.warning(f"Failed to compute next runs: {e}")
        return []


def _to_response(schedule: SyncSchedule) -> ScheduleResponse:
    response = ScheduleResponse.model_validate(schedule)
    if schedule.is_active:
        response.next_runs = compute_next_runs(schedule.cron_expression)
    return response


def _check_endpoints(endpoints_mb, endpoints_nex) -> None:
    try:
        resolve_endpoints(SchoolSource.MANAGEBAC.value, endpoints_mb)
        resolve_endpoints(SchoolSource.NEXQUARE.value, endpoints_nex)
    except ScopeError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


def _reload_scheduler() -> None:
    """Pick up the change now instead of at the next poll."""
    if not sync_scheduler.enabled:
        return
    try:
        sync_scheduler.reload()
    except Exception as e:
        # the next poll retries; the schedule is already saved
        log.error(f"Failed to reload sync schedules: {e}")


def _get_schedule_or_404(db: Session, schedule_id: int) -> SyncSchedule:
    schedule = db.query(SyncSchedule).filter(SyncSchedule.id == schedule_id).first()
    if not schedule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Schedule {schedule_id} not found")
    return schedule


@router.get("", response_model=List[ScheduleResponse])
async def list_schedules(db: Session = Depends(get_db)):
    schedules = db.query(SyncSchedule).order_by(SyncSchedule.id).all()
    return [_to_response(s) for s in schedules]


@router.post("", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
async def create_schedule(http_request: Request, body: ScheduleCreate, db: Session = Depends(get_db)):
    _check_endpoints(body.endpoints_mb, body.endpoints_nex)

    schedule = SyncSchedule(**body.model_dump())
    db.add(schedule)
    db.commit()
    db.refresh(schedule)
    log.info(f"Created schedule {schedule.id}: node={schedule.node_id} cron='{schedule.cron_expression}'")

    _reload_scheduler()
    create_audit_log(
        db=db,
        request=http_request,
        action="schedule_created",
        entity_type="sync_schedule",
        entity_id=schedule.id,
        user=body.created_by,
        details=body.model_dump(exclude={"created_by"}),
    )
    return _to_response(schedule)


@router.put("/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(
    schedule_id: int,
    http_request: Request,
    update: ScheduleUpdate,
    db: Session = Depends(get_db),
):
    """Update a schedule and re-register its job."""
    schedule = _get_schedule_or_404(db, schedule_id)
    values = {
        field: value
        for field, value in update.model_dump(exclude_unset=True, exclude={"updated_by"}).items()
        if value is not None or field in ("endpoints_mb", "endpoints_nex")  # null endpoints = all
    }
    _check_endpoints(values.get("endpoints_mb", schedule.endpoints_mb),
                     values.get("endpoints_nex", schedule.endpoints_nex))

    # Track changes for audit
    changes = {}
    for field, new_value in values.items():
        old_value = getattr(schedule, field)
        if old_value != new_value:
            changes[field] = {'old': old_value, 'new': new_value}
            setattr(schedule, field, new_value)

    db.commit()
    db.refresh(schedule)
    _reload_scheduler()

    create_audit_log(
        db=db,
        request=http_request,
        action="schedule_updated",
        entity_type="sync_schedule",
        entity_id=schedule.id,
        user=update.updated_by,
        details={'changes': changes},
    )
    return _to_response(schedule)


@router.delete("/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_schedule(schedule_id: int, http_request: Request, db: Session = Depends(get_db)):
    """Delete a schedule; past runs keep their history with schedule_id cleared."""
    schedule = _get_schedule_or_404(db, schedule_id)
    detached = (
        db.query(SyncRun)
        .filter(SyncRun.schedule_id == schedule_id)
        .update({SyncRun.schedule_id: None}, synchronize_session=False)
    )
    db.delete(schedule)
    db.commit()
    log.info(f"Deleted schedule {schedule_id} ({detached} runs detached)")

    _reload_scheduler()
    create_audit_log(
        db=db,
        request=http_request,
        action="schedule_deleted",
        entity_type="sync_schedule",
        entity_id=schedule_id,
        details={"runs_detached": detached},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
