"""Runs one sync: scope resolution, attempt rows, both tracks, final status."""

import asyncio
import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from schoolsync.connectors import ConnectorFactory
from schoolsync.connectors.base import SyncContext
from schoolsync.constants.sync_status import (
    CANCELLED_ATTEMPT_MESSAGE,
    CANCELLED_SUMMARY,
    RunStatus,
    SCHEDULER_PRINCIPAL,
    SchoolSource,
    source_label,
)
from schoolsync.exceptions import SyncCancelled
from schoolsync.services.endpoints import academic_year_date_range, default_academic_year, resolve_endpoints
from schoolsync.services.pipeline_track import PipelineTrack
from schoolsync.services.record_store import RecordStore
from schoolsync.services.run_ledger import RunLedger, truncate_error
from schoolsync.services.scope_resolver import ScopeRequest, ScopeResolver, describe_scope
from schoolsync.services.serial_track import SerialTrack

log = logging.getLogger(__name__)


class RunRequest(BaseModel):
    scope: ScopeRequest
    academic_year: Optional[str] = None
    endpoints_mb: Optional[List[str]] = None
    endpoints_nex: Optional[List[str]] = None
    triggered_by: str = SCHEDULER_PRINCIPAL
    schedule_id: Optional[int] = None
    existing_run_id: Optional[int] = None


class RunResult(BaseModel):
    run_id: int
    status: str
    total_schools: int = 0
    schools_succeeded: int = 0
    schools_failed: int = 0
    error_summary: Optional[str] = Field(None, description="First few per-school errors joined by '; '")


class SyncOrchestrator:
    """
    Composes the scope resolver, run ledger and both tracks into one run.

    ManageBac systems go through the serial track and Nexquare systems through
    the wavefront pipeline; the two tracks run concurrently.
    """

    def __init__(self, ledger: RunLedger, scope_resolver: ScopeResolver,
                 connector_factory: Optional[ConnectorFactory] = None,
                 record_store: Optional[RecordStore] = None):
        self.ledger = ledger
        self.scope_resolver = scope_resolver
        self.connector_factory = connector_factory or ConnectorFactory()
        self.record_store = record_store or RecordStore(ledger.session_factory)
        self.serial_track = SerialTrack(ledger, self.connector_factory)
        self.pipeline_track = PipelineTrack(ledger, self.connector_factory)

    async def run(self, request: RunRequest, cancel_event: Optional[asyncio.Event] = None) -> RunResult:
        # Scope errors surface before any run row exists
        request.scope.check_mode()
        endpoints_mb = resolve_endpoints(SchoolSource.MANAGEBAC.value, request.endpoints_mb)
        endpoints_nex = resolve_endpoints(SchoolSource.NEXQUARE.value, request.endpoints_nex)
        academic_year = request.academic_year or default_academic_year()
        cancel_event = cancel_event or asyncio.Event()

        if request.existing_run_id is not None:
            run_id = request.existing_run_id
            if not self.ledger.start_run(run_id):
                log.info(f"Run {run_id} was closed before it started")
                return self._finish_cancelled(run_id, 0)
        else:
            run_id = self.ledger.create_run(describe_scope(request.scope), academic_year,
                                            request.triggered_by, schedule_id=request.schedule_id)

        try:
            scope = self.scope_resolver.resolve(request.scope)
            items = self.ledger.materialize_school_attempts(run_id, scope.all_systems())
            self.ledger.set_total_schools(run_id, len(items))
        except Exception as e:
            log.error(f"Run {run_id}: setup failed: {e}")
            self.ledger.finalize_run(run_id, RunStatus.FAILED.value, truncate_error(f"Setup failed: {e}"))
            raise

        mb_items = [item for item in items if item[0].source == SchoolSource.MANAGEBAC.value]
        nex_items = [item for item in items if item[0].source == SchoolSource.NEXQUARE.value]
        start_date, end_date = academic_year_date_range(academic_year)
        context = SyncContext(academic_year=academic_year, start_date=start_date, end_date=end_date,
                              record_store=self.record_store)
        log.info(f"Run {run_id}: {len(mb_items)} ManageBac + {len(nex_items)} Nexquare systems, year {academic_year}")

        track_results = await asyncio.gather(
            self.serial_track.run(run_id, mb_items, endpoints_mb, context, cancel_event),
            self.pipeline_track.run(run_id, nex_items, endpoints_nex, context, cancel_event),
            return_exceptions=True,
        )

        if cancel_event.is_set() or self.ledger.get_run_status(run_id) == RunStatus.CANCELLED.value:
            return self._finish_cancelled(run_id, len(items))

        for source, outcome in zip((SchoolSource.MANAGEBAC.value, SchoolSource.NEXQUARE.value), track_results):
            if isinstance(outcome, BaseException) and not isinstance(outcome, SyncCancelled):
                log.error(f"Run {run_id}: {source_label(source)} track crashed: {outcome!r}")
                self.ledger.fail_unfinished(run_id, source, f"Track crashed: {outcome}")

        succeeded, failed = self.ledger.recompute_counts(run_id) or (0, 0)
        status = RunStatus.FAILED.value if succeeded == 0 and failed > 0 else RunStatus.COMPLETED.value
        errors = self.ledger.failed_attempt_errors(run_id)
        error_summary = "; ".join(errors) if errors else None
        if not self.ledger.finalize_run(run_id, status, error_summary):
            return self._finish_cancelled(run_id, len(items))

        log.info(f"Run {run_id} {status}: {succeeded} succeeded, {failed} failed of {len(items)}")
        return RunResult(run_id=run_id, status=status, total_schools=len(items),
                         schools_succeeded=succeeded, schools_failed=failed, error_summary=error_summary)

    def _finish_cancelled(self, run_id: int, total: int) -> RunResult:
        """Closes a cancelled run; reports the stored outcome if the ledger already closed it."""
        self.ledger.skip_unfinished(run_id, CANCELLED_ATTEMPT_MESSAGE)
        succeeded, failed = self.ledger.recompute_counts(run_id) or (0, 0)
        status, error_summary = RunStatus.CANCELLED.value, CANCELLED_SUMMARY
        if not self.ledger.finalize_run(run_id, status, error_summary):
            run = self.ledger.get_run(run_id)
            status, error_summary = run.status, run.error_summary
        log.info(f"Run {run_id} {status}: {succeeded} succeeded, {failed} failed before cancellation")
        return RunResult(run_id=run_id, status=status, total_schools=total,
                         schools_succeeded=succeeded, schools_failed=failed, error_summary=error_summary)
