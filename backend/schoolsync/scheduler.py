"""APScheduler integration for recurring sync schedules."""

import json
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from schoolsync.config import settings
from schoolsync.constants.sync_status import SCHEDULER_PRINCIPAL
from schoolsync.database import SessionLocal
from schoolsync.models.schedule import SyncSchedule
from schoolsync.services.orchestrator import RunRequest, SyncOrchestrator
from schoolsync.services.run_ledger import RunLedger
from schoolsync.services.scope_resolver import ScopeRequest, ScopeResolver

log = logging.getLogger(__name__)

RELOAD_JOB_ID = "sync-schedule-reload"

# Crontab numbering: 0 and 7 are both Sunday
CRON_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
# APScheduler numbering starts at Monday
APSCHEDULER_DAY_ORDER = (1, 2, 3, 4, 5, 6, 0)


def _cron_day(value: str) -> int:
    value = value.lower()
    if value in CRON_DAY_NAMES:
        return CRON_DAY_NAMES.index(value)
    if value.isdigit() and int(value) <= 7:
        return int(value)
    raise ValueError(f"Invalid day of week '{value}'")


def translate_day_of_week(field: str) -> str:
    """
    Rewrites a crontab day-of-week field as APScheduler day names.

    ``"0"`` and ``"7"`` become ``"sun"``, ``"1-5"`` becomes ``"mon,tue,wed,thu,fri"``;
    lists, ranges and steps are expanded element-wise.
    """
    if field in ("*", "?"):
        return "*"
    days = set()
    for part in field.split(","):
        spec, _, step = part.partition("/")
        step = int(step) if step else 1
        if step < 1:
            raise ValueError(f"Invalid step in day of week '{part}'")
        if spec == "*":
            first, last = 0, 6
        elif "-" in spec:
            start, end = spec.split("-", 1)
            first, last = _cron_day(start), _cron_day(end)
            if first > last:
                raise ValueError(f"Day of week range '{spec}' runs backwards")
        else:
            first = _cron_day(spec)
            last = max(first, 6) if part != spec else first
        days.update(day % 7 for day in range(first, last + 1, step))
    if len(days) == 7:
        return "*"
    return ",".join(CRON_DAY_NAMES[day] for day in APSCHEDULER_DAY_ORDER if day in days)


def build_cron_trigger(expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """
    Builds a trigger from a 5-field crontab or a 6-field expression with
    seconds first. Raises ValueError for anything else.
    """
    timezone = timezone or settings.cron_timezone
    fields = (expression or "").split()
    if len(fields) == 5:
        fields = ["0"] + fields
    if len(fields) != 6:
        raise ValueError(f"Cron expression must have 5 or 6 fields, got {len(fields)}: '{expression}'")
    second, minute, hour, day, month, day_of_week = fields
    return CronTrigger(second=second, minute=minute, hour=hour, day=day, month=month,
                       day_of_week=translate_day_of_week(day_of_week), timezone=timezone)


def next_run_times(expression: str, count: int = 3, timezone: Optional[str] = None) -> List[datetime]:
    timezone = timezone or settings.cron_timezone
    trigger = build_cron_trigger(expression, timezone)
    now = datetime.now(ZoneInfo(timezone))
    times: List[datetime] = []
    previous = None
    for _ in range(count):
        fire_time = trigger.get_next_fire_time(previous, previous or now)
        if fire_time is None:
            break
        times.append(fire_time)
        previous = fire_time
    return times


def schedule_fingerprint(schedule: SyncSchedule) -> str:
    """Changes whenever anything a firing depends on changes."""
    return json.dumps(
        {
            "node_id": schedule.node_id,
            "academic_year": schedule.academic_year,
            "cron": schedule.cron_expression,
            "endpoints_mb": schedule.endpoints_mb,
            "endpoints_nex": schedule.endpoints_nex,
            "include_descendants": bool(schedule.include_descendants),
        },
        sort_keys=True,
    )


class SyncScheduler:
    """
    Owns the APScheduler instance and one cron job per active schedule.

    Jobs are keyed by schedule id and diffed against the database on a fixed
    interval. All mutations happen on the event loop thread.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 orchestrator: Optional[SyncOrchestrator] = None, timezone: Optional[str] = None):
        self.session_factory = session_factory
        self.timezone = timezone or settings.cron_timezone
        self.scheduler = AsyncIOScheduler(timezone=self.timezone)
        self.orchestrator = orchestrator or SyncOrchestrator(RunLedger(session_factory), ScopeResolver(session_factory))
        self.fingerprints: Dict[int, str] = {}

    @property
    def enabled(self) -> bool:
        return settings.enable_scheduler

    @staticmethod
    def job_id(schedule_id: int) -> str:
        return f"sync-schedule-{schedule_id}"

    def start(self) -> bool:
        """Loads schedules and starts the scheduler; False when disabled or storage is unreachable."""
        if not self.enabled:
            log.info("Sync scheduler disabled (ENABLE_SCHEDULER=false)")
            return False
        try:
            with self.session_factory() as db:
                db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            log.error(f"Sync scheduler not started: database unreachable: {e}")
            return False

        self.reload()
        self.scheduler.add_job(
            self._reload_job,
            IntervalTrigger(minutes=settings.schedule_reload_minutes),
            id=RELOAD_JOB_ID,
            replace_existing=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        log.info(f"Sync scheduler started with {len(self.fingerprints)} schedules "
                 f"(tz={self.timezone}, reload every {settings.schedule_reload_minutes} min)")
        return True

    async def _reload_job(self):
        try:
            self.reload()
        except SQLAlchemyError as e:
            log.error(f"Schedule reload failed: {e}")

    def reload(self) -> Dict[str, List[int]]:
        """Diffs registered jobs against active schedules; returns what changed."""
        with self.session_factory() as db:
            schedules = db.query(SyncSchedule).filter(SyncSchedule.is_active.is_(True)).order_by(SyncSchedule.id).all()

        changes: Dict[str, List[int]] = {"added": [], "replaced": [], "removed": [], "invalid": []}
        active_ids = {s.id for s in schedules}
        for schedule_id in sorted(set(self.fingerprints) - active_ids):
            self._unregister(schedule_id)
            changes["removed"].append(schedule_id)

        for schedule in schedules:
            fingerprint = schedule_fingerprint(schedule)
            previous = self.fingerprints.get(schedule.id)
            if previous == fingerprint:
                continue
            try:
                trigger = build_cron_trigger(schedule.cron_expression, self.timezone)
            except ValueError as e:
                log.warning(f"Schedule {schedule.id} has invalid cron '{schedule.cron_expression}', skipping: {e}")
                if previous is not None:
                    self._unregister(schedule.id)
                changes["invalid"].append(schedule.id)
                continue
            if previous is not None:
                self._unregister(schedule.id)
            self._register(schedule, trigger, fingerprint)
            changes["replaced" if previous is not None else "added"].append(schedule.id)

        if any(changes.values()):
            log.info(f"Schedules reloaded: {changes}")
        else:
            log.debug("Schedules reloaded: no changes")
        return changes

    def _register(self, schedule: SyncSchedule, trigger: CronTrigger, fingerprint: str) -> None:
        self.scheduler.add_job(
            self.fire,
            trigger=trigger,
            id=self.job_id(schedule.id),
            kwargs={
                "schedule_id": schedule.id,
                "node_id": schedule.node_id,
                "academic_year": schedule.academic_year,
                "endpoints_mb": schedule.endpoints_mb,
                "endpoints_nex": schedule.endpoints_nex,
                "include_descendants": bool(schedule.include_descendants),
            },
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.fingerprints[schedule.id] = fingerprint
        log.info(f"Registered schedule {schedule.id}: node={schedule.node_id} cron='{schedule.cron_expression}'")

    def _unregister(self, schedule_id: int) -> None:
        job_id = self.job_id(schedule_id)
        if self.scheduler.get_job(job_id) is not None:
            self.scheduler.remove_job(job_id)
        self.fingerprints.pop(schedule_id, None)
        log.info(f"Unregistered schedule {schedule_id}")

    async def fire(self, schedule_id: int, node_id: str, academic_year: str,
                   endpoints_mb: Optional[List[str]] = None, endpoints_nex: Optional[List[str]] = None,
                   include_descendants: bool = False):
        log.info(f"Schedule {schedule_id} firing for node {node_id}, year {academic_year}")
        request = RunRequest(
            scope=ScopeRequest(node_ids=[node_id], include_descendants=include_descendants),
            academic_year=academic_year,
            endpoints_mb=endpoints_mb,
            endpoints_nex=endpoints_nex,
            triggered_by=SCHEDULER_PRINCIPAL,
            schedule_id=schedule_id,
        )
        try:
            result = await self.orchestrator.run(request)
        except Exception as e:
            log.error(f"Scheduled sync for schedule {schedule_id} failed: {e}", exc_info=True)
            return None
        log.info(f"Schedule {schedule_id} run {result.run_id} finished: {result.status}")
        return result

    def registered_ids(self) -> List[int]:
        return sorted(self.fingerprints)

    def shutdown(self) -> None:
        """Stops the poller and every schedule job, then the scheduler itself."""
        if self.scheduler.get_job(RELOAD_JOB_ID) is not None:
            self.scheduler.remove_job(RELOAD_JOB_ID)
        for schedule_id in list(self.fingerprints):
            self._unregister(schedule_id)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            log.info("Sync scheduler shut down")


sync_scheduler = SyncScheduler()
