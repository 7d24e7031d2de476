"""
Persisted run ledger: the ``sync_runs`` aggregate and its ``sync_run_schools`` attempts.

Every write opens its own short session and commits, so concurrent tracks
never share a transaction. Counts are always recomputed from attempt rows.
Progress writes are best effort: a failure is logged and the sync goes on.
"""

import functools
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from schoolsync.config import settings
from schoolsync.connectors.base import SystemConfig
from schoolsync.constants.sync_status import (
    ACTIVE_RUN_STATUSES,
    AttemptStatus,
    CANCELLED_ATTEMPT_MESSAGE,
    RunStatus,
    UNFINISHED_ATTEMPT_STATUSES,
)
from schoolsync.exceptions import LedgerError
from schoolsync.models.sync_run import SyncRun, SyncRunSchool

log = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def truncate_error(message: str, max_length: Optional[int] = None) -> str:
    limit = max_length or settings.error_message_max_length
    message = str(message)
    return message if len(message) <= limit else message[: limit - 3] + "..."


def best_effort(method):
    """Logs and swallows any failure of a progress write."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except Exception as e:
            log.warning(f"Ledger progress write {method.__name__}{args} failed: {e}")
            return None

    return wrapper


class RunLedger:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    # --- Run lifecycle -------------------------------------------------

    def create_run(self, scope_label: str, academic_year: str, triggered_by: str,
                   schedule_id: Optional[int] = None, status: str = RunStatus.RUNNING.value) -> int:
        try:
            with self.session_factory() as db:
                run = SyncRun(
                    node_id=scope_label,
                    academic_year=academic_year,
                    triggered_by=triggered_by,
                    schedule_id=schedule_id,
                    status=status,
                    started_at=utcnow() if status == RunStatus.RUNNING.value else None,
                )
                db.add(run)
                db.commit()
                run_id = run.id
        except SQLAlchemyError as e:
            raise LedgerError(f"Could not create sync run: {e}") from e
        log.info(f"Created sync run {run_id} (scope='{scope_label}', year={academic_year}, by={triggered_by}, status={status})")
        return run_id

    def start_run(self, run_id: int) -> bool:
        """Moves a pre-created pending run to running. False if it is no longer pending."""
        try:
            with self.session_factory() as db:
                run = db.query(SyncRun).filter(SyncRun.id == run_id).first()
                if run is None:
                    raise LedgerError(f"Sync run {run_id} not found")
                if run.status != RunStatus.PENDING.value:
                    log.warning(f"Sync run {run_id} is {run.status}, not starting it")
                    return False
                run.status = RunStatus.RUNNING.value
                run.started_at = utcnow()
                db.commit()
        except SQLAlchemyError as e:
            raise LedgerError(f"Could not start sync run {run_id}: {e}") from e
        return True

    def set_total_schools(self, run_id: int, total: int) -> None:
        try:
            with self.session_factory() as db:
                db.query(SyncRun).filter(SyncRun.id == run_id).update({SyncRun.total_schools: total})
                db.commit()
        except SQLAlchemyError as e:
            raise LedgerError(f"Could not persist total schools for run {run_id}: {e}") from e

    def materialize_school_attempts(self, run_id: int,
                                    systems: Sequence[SystemConfig]) -> List[Tuple[SystemConfig, int]]:
        """One pending attempt row per system, returned in input order."""
        try:
            with self.session_factory() as db:
                rows = [
                    SyncRunSchool(
                        sync_run_id=run_id,
                        school_id=system.school_id,
                        school_source=system.source,
                        config_id=system.config_id,
                        school_name=system.school_name,
                        status=AttemptStatus.PENDING.value,
                        endpoint_log=[],
                    )
                    for system in systems
                ]
                db.add_all(rows)
                db.commit()
                items = [(system, row.id) for system, row in zip(systems, rows)]
        except SQLAlchemyError as e:
            raise LedgerError(f"Could not create school attempts for run {run_id}: {e}") from e
        log.debug(f"Materialized {len(items)} school attempts for run {run_id}")
        return items

    def _close_run(self, db: Session, run_id: int, status: str, error_summary: Optional[str]) -> int:
        # Terminal runs are never rewritten
        return (
            db.query(SyncRun)
            .filter(SyncRun.id == run_id, SyncRun.status.in_(ACTIVE_RUN_STATUSES))
            .update(
                {SyncRun.status: status, SyncRun.completed_at: utcnow(), SyncRun.error_summary: error_summary},
                synchronize_session=False,
            )
        )

    def finalize_run(self, run_id: int, status: str, error_summary: Optional[str] = None) -> bool:
        """
        Writes the terminal status of a pending or running run.

        Returns False, leaving the row alone, when the run already reached a
        terminal status (for example after a cancel from another process).
        """
        try:
            with self.session_factory() as db:
                changed = self._close_run(db, run_id, status, error_summary)
                db.commit()
                if not changed:
                    current = db.query(SyncRun.status).filter(SyncRun.id == run_id).first()
                    if current is None:
                        raise LedgerError(f"Sync run {run_id} not found")
                    log.warning(f"Sync run {run_id} is already {current[0]}, not finalizing it as {status}")
                    return False
        except SQLAlchemyError as e:
            raise LedgerError(f"Could not finalize sync run {run_id}: {e}") from e
        log.info(f"Sync run {run_id} finalized as {status}")
        return True

    def force_cancel(self, run_id: int, message: str, attempt_message: str = CANCELLED_ATTEMPT_MESSAGE) -> bool:
        """Marks a run cancelled directly in storage; used when no live handle exists."""
        with self.session_factory() as db:
            changed = self._close_run(db, run_id, RunStatus.CANCELLED.value, message)
            db.commit()
        if not changed:
            return False
        self.skip_unfinished(run_id, attempt_message)
        log.info(f"Sync run {run_id} force-cancelled: {message}")
        return True

    # --- Attempt progress (best effort) ---------------------------------

    def _update_attempt(self, attempt_id: int, from_statuses: Sequence[str] = UNFINISHED_ATTEMPT_STATUSES,
                        **values) -> Optional[int]:
        """Updates an attempt still in one of ``from_statuses``; returns its run id, or None if untouched."""
        with self.session_factory() as db:
            attempt = db.query(SyncRunSchool).filter(SyncRunSchool.id == attempt_id).first()
            if attempt is None:
                log.warning(f"School attempt {attempt_id} not found")
                return None
            if attempt.status not in from_statuses:
                log.debug(f"School attempt {attempt_id} is already {attempt.status}, ignoring update")
                return None
            for key, value in values.items():
                setattr(attempt, key, value)
            db.commit()
            return attempt.sync_run_id

    @best_effort
    def mark_school_running(self, attempt_id: int) -> None:
        self._update_attempt(attempt_id, from_statuses=(AttemptStatus.PENDING.value,),
                             status=AttemptStatus.RUNNING.value, started_at=utcnow())

    @best_effort
    def mark_school_completed(self, attempt_id: int) -> None:
        run_id = self._update_attempt(attempt_id, status=AttemptStatus.COMPLETED.value,
                                      completed_at=utcnow(), current_endpoint=None)
        if run_id is not None:
            self.recompute_counts(run_id)

    @best_effort
    def mark_school_failed(self, attempt_id: int, error: str) -> None:
        run_id = self._update_attempt(attempt_id, status=AttemptStatus.FAILED.value, completed_at=utcnow(),
                                      current_endpoint=None, error_message=truncate_error(error))
        if run_id is not None:
            self.recompute_counts(run_id)

    @best_effort
    def mark_school_skipped(self, attempt_id: int, message: Optional[str] = None) -> None:
        run_id = self._update_attempt(attempt_id, status=AttemptStatus.SKIPPED.value, completed_at=utcnow(),
                                      current_endpoint=None, error_message=message)
        if run_id is not None:
            self.recompute_counts(run_id)

    @best_effort
    def set_current_endpoint(self, attempt_id: int, endpoint: Optional[str]) -> None:
        self._update_attempt(attempt_id, current_endpoint=endpoint)

    @best_effort
    def append_endpoint_log_entry(self, attempt_id: int, endpoint: str, started_at: datetime,
                                  completed_at: datetime, error: Optional[str] = None) -> None:
        with self.session_factory() as db:
            attempt = db.query(SyncRunSchool).filter(SyncRunSchool.id == attempt_id).first()
            if attempt is None:
                log.warning(f"School attempt {attempt_id} not found")
                return
            if attempt.status not in UNFINISHED_ATTEMPT_STATUSES:
                log.debug(f"School attempt {attempt_id} is already {attempt.status}, not logging '{endpoint}'")
                return
            entries = list(attempt.endpoint_log or [])
            if error is None and any(e.get("endpoint") == endpoint and not e.get("error") for e in entries):
                log.debug(f"Endpoint '{endpoint}' already logged as successful for attempt {attempt_id}")
                return
            entry = {
                "endpoint": endpoint,
                "started_at": started_at.isoformat(),
                "completed_at": completed_at.isoformat(),
            }
            if error is not None:
                entry["error"] = truncate_error(error)
            # JSON columns only notice reassignment
            attempt.endpoint_log = entries + [entry]
            db.commit()

    @best_effort
    def recompute_counts(self, run_id: int) -> Tuple[int, int]:
        with self.session_factory() as db:
            counts = dict(
                db.query(SyncRunSchool.status, func.count(SyncRunSchool.id))
                .filter(SyncRunSchool.sync_run_id == run_id)
                .group_by(SyncRunSchool.status)
                .all()
            )
            succeeded = counts.get(AttemptStatus.COMPLETED.value, 0)
            failed = counts.get(AttemptStatus.FAILED.value, 0)
            db.query(SyncRun).filter(SyncRun.id == run_id).update(
                {SyncRun.schools_succeeded: succeeded, SyncRun.schools_failed: failed}
            )
            db.commit()
        return succeeded, failed

    def _close_unfinished(self, run_id: int, status: str, message: str,
                          source: Optional[str] = None) -> int:
        with self.session_factory() as db:
            query = db.query(SyncRunSchool).filter(
                SyncRunSchool.sync_run_id == run_id,
                SyncRunSchool.status.in_(UNFINISHED_ATTEMPT_STATUSES),
            )
            if source is not None:
                query = query.filter(SyncRunSchool.school_source == source)
            changed = query.update(
                {
                    SyncRunSchool.status: status,
                    SyncRunSchool.completed_at: utcnow(),
                    SyncRunSchool.current_endpoint: None,
                    SyncRunSchool.error_message: truncate_error(message),
                },
                synchronize_session=False,
            )
            db.commit()
        self.recompute_counts(run_id)
        return changed

    @best_effort
    def skip_unfinished(self, run_id: int, message: str) -> int:
        return self._close_unfinished(run_id, AttemptStatus.SKIPPED.value, message)

    @best_effort
    def fail_unfinished(self, run_id: int, source: str, message: str) -> int:
        return self._close_unfinished(run_id, AttemptStatus.FAILED.value, message, source=source)

    # --- Reads ---------------------------------------------------------

    def failed_attempt_errors(self, run_id: int, limit: Optional[int] = None) -> List[str]:
        limit = limit or settings.error_summary_limit
        with self.session_factory() as db:
            rows = (
                db.query(SyncRunSchool)
                .filter(SyncRunSchool.sync_run_id == run_id, SyncRunSchool.status == AttemptStatus.FAILED.value)
                .order_by(SyncRunSchool.id)
                .limit(limit)
                .all()
            )
            return [f"{r.school_name} ({r.school_source}): {r.error_message or 'Unknown error'}" for r in rows]

    def get_run_status(self, run_id: int) -> Optional[str]:
        with self.session_factory() as db:
            row = db.query(SyncRun.status).filter(SyncRun.id == run_id).first()
            return row[0] if row else None

    def get_run(self, run_id: int) -> Optional[SyncRun]:
        """Run row with its school attempts loaded."""
        with self.session_factory() as db:
            return (
                db.query(SyncRun)
                .options(selectinload(SyncRun.schools))
                .filter(SyncRun.id == run_id)
                .first()
            )

    def list_runs(self, node_id: Optional[str] = None, academic_year: Optional[str] = None,
                  status: Optional[str] = None, limit: int = 50) -> List[SyncRun]:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        with self.session_factory() as db:
            query = db.query(SyncRun)
            if node_id:
                query = query.filter(SyncRun.node_id == node_id)
            if academic_year:
                query = query.filter(SyncRun.academic_year == academic_year)
            if status:
                query = query.filter(SyncRun.status == status)
            return query.order_by(SyncRun.id.desc()).limit(limit).all()

    def list_run_schools(self, run_id: int, offset: int = 0, limit: int = 50) -> Tuple[List[SyncRunSchool], int]:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        with self.session_factory() as db:
            query = db.query(SyncRunSchool).filter(SyncRunSchool.sync_run_id == run_id)
            total = query.count()
            rows = query.order_by(SyncRunSchool.id).offset(max(0, offset)).limit(limit).all()
            return rows, total

