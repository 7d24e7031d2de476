import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from schoolsync.connectors import ConnectorFactory
from schoolsync.constants.sync_status import (
    ACTIVE_RUN_STATUSES,
    CANCELLED_OUT_OF_PROCESS_SUMMARY,
    RunStatus,
    SchoolSource,
)
from schoolsync.database import SessionLocal
from schoolsync.exceptions import LedgerError, RunNotFoundError, RunStateError
from schoolsync.models.sync_run import SyncRun, SyncRunSchool
from schoolsync.services.endpoints import default_academic_year, resolve_endpoints
from schoolsync.services.orchestrator import RunRequest, RunResult, SyncOrchestrator
from schoolsync.services.run_ledger import RunLedger, truncate_error
from schoolsync.services.run_registry import ActiveRunRegistry, active_runs
from schoolsync.services.scope_resolver import ScopeRequest, ScopeResolver, describe_scope

log = logging.getLogger(__name__)


class SyncRunService:
    """
    Semantic operations behind the sync API: trigger, cancel and read runs.

    Triggered runs execute as background asyncio tasks on the caller's loop;
    ``tasks`` keeps a reference to each one until it finishes.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 connector_factory: Optional[ConnectorFactory] = None,
                 registry: Optional[ActiveRunRegistry] = None):
        self.ledger = RunLedger(session_factory)
        self.orchestrator = SyncOrchestrator(self.ledger, ScopeResolver(session_factory), connector_factory)
        self.registry = registry if registry is not None else active_runs
        self.tasks: Dict[int, asyncio.Task] = {}

    async def trigger_run(self, scope: ScopeRequest, academic_year: Optional[str] = None,
                          endpoints_mb: Optional[List[str]] = None, endpoints_nex: Optional[List[str]] = None,
                          triggered_by: str = "manual") -> Dict[str, Any]:
        """Creates a pending run and starts it in the background."""
        scope.check_mode()
        resolve_endpoints(SchoolSource.MANAGEBAC.value, endpoints_mb)
        resolve_endpoints(SchoolSource.NEXQUARE.value, endpoints_nex)
        academic_year = academic_year or default_academic_year()

        run_id = self.ledger.create_run(describe_scope(scope), academic_year, triggered_by,
                                        status=RunStatus.PENDING.value)
        cancel_event = self.registry.register(run_id)
        request = RunRequest(scope=scope, academic_year=academic_year, endpoints_mb=endpoints_mb,
                             endpoints_nex=endpoints_nex, triggered_by=triggered_by, existing_run_id=run_id)
        task = asyncio.create_task(self._execute(run_id, request, cancel_event), name=f"sync-run-{run_id}")
        self.tasks[run_id] = task
        task.add_done_callback(lambda _: self.tasks.pop(run_id, None))
        return {"run_id": run_id, "status": "started"}

    async def _execute(self, run_id: int, request: RunRequest, cancel_event: asyncio.Event) -> Optional[RunResult]:
        try:
            return await self.orchestrator.run(request, cancel_event)
        except Exception as e:
            log.exception(f"Sync run {run_id} crashed: {e}")
            if self.ledger.get_run_status(run_id) in ACTIVE_RUN_STATUSES:
                try:
                    self.ledger.finalize_run(run_id, RunStatus.FAILED.value, truncate_error(str(e)))
                except LedgerError as finalize_error:
                    log.error(f"Could not mark run {run_id} failed: {finalize_error}")
            return None
        finally:
            self.registry.remove(run_id)

    def cancel_run(self, run_id: int) -> Dict[str, Any]:
        status = self.ledger.get_run_status(run_id)
        if status is None:
            raise RunNotFoundError(f"Sync run {run_id} not found")
        if status not in ACTIVE_RUN_STATUSES:
            raise RunStateError(f"Run {run_id} is {status}; only pending or running runs can be cancelled")

        if self.registry.cancel(run_id):
            return {"run_id": run_id, "status": "cancelling"}

        log.warning(f"No live handle for run {run_id}, marking it cancelled in the ledger")
        self.ledger.force_cancel(run_id, CANCELLED_OUT_OF_PROCESS_SUMMARY)
        return {"run_id": run_id, "status": RunStatus.CANCELLED.value}

    def list_runs(self, node_id: Optional[str] = None, academic_year: Optional[str] = None,
                  status: Optional[str] = None, limit: int = 50) -> List[SyncRun]:
        return self.ledger.list_runs(node_id=node_id, academic_year=academic_year, status=status, limit=limit)

    def get_run(self, run_id: int) -> SyncRun:
        run = self.ledger.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Sync run {run_id} not found")
        return run

    def list_run_schools(self, run_id: int, offset: int = 0, limit: int = 50) -> Tuple[List[SyncRunSchool], int]:
        if self.ledger.get_run_status(run_id) is None:
            raise RunNotFoundError(f"Sync run {run_id} not found")
        return self.ledger.list_run_schools(run_id, offset=offset, limit=limit)


sync_run_service = SyncRunService()


def get_sync_run_service() -> SyncRunService:
    """FastAPI dependency; tests override it with a service bound to their database."""
    return sync_run_service
