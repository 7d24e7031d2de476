"""Serial track: one system at a time, endpoints in order, for stateful connectors."""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from schoolsync.connectors import ConnectorFactory
from schoolsync.connectors.base import BaseConnector, SystemConfig, SyncContext
from schoolsync.constants.sync_status import AttemptStatus
from schoolsync.exceptions import SyncCancelled
from schoolsync.services.run_ledger import RunLedger, utcnow

log = logging.getLogger(__name__)


def error_text(error: BaseException) -> str:
    return str(error) or type(error).__name__


class SerialTrack:
    """
    Runs each system to completion before starting the next.

    A fresh connector is created per system, so a connector's "current
    school" state never leaks between systems. A failed endpoint fails the
    system and moves on to the next one; cancellation raises SyncCancelled
    and leaves the remaining systems untouched.
    """

    def __init__(self, ledger: RunLedger, connector_factory: ConnectorFactory):
        self.ledger = ledger
        self.connector_factory = connector_factory

    async def run(self, run_id: int, items: Sequence[Tuple[SystemConfig, int]], endpoints: List[str],
                  context: SyncContext, cancel_event: Optional[asyncio.Event] = None) -> Dict[int, str]:
        """Returns attempt id -> final attempt status for every system processed."""
        results: Dict[int, str] = {}
        if not items:
            return results
        log.info(f"Run {run_id}: serial track starting for {len(items)} systems x {len(endpoints)} endpoints")

        for system, attempt_id in items:
            self._check_cancelled(run_id, cancel_event)
            connector = self.connector_factory.create(system.source)
            try:
                results[attempt_id] = await self._run_system(run_id, connector, system, attempt_id,
                                                             endpoints, context, cancel_event)
            finally:
                await connector.aclose()

        log.info(f"Run {run_id}: serial track finished")
        return results

    async def _run_system(self, run_id: int, connector: BaseConnector, system: SystemConfig, attempt_id: int,
                          endpoints: List[str], context: SyncContext,
                          cancel_event: Optional[asyncio.Event]) -> str:
        self.ledger.mark_school_running(attempt_id)
        log.info(f"Run {run_id}: syncing {system.school_name} ({system.source}:{system.school_id})")

        for endpoint in endpoints:
            self._check_cancelled(run_id, cancel_event)
            self.ledger.set_current_endpoint(attempt_id, endpoint)
            started_at = utcnow()
            try:
                await connector.run_endpoint(system, endpoint, context)
            except Exception as e:
                message = error_text(e)
                log.error(f"Run {run_id}: {system.school_name} failed on '{endpoint}': {message}")
                self.ledger.append_endpoint_log_entry(attempt_id, endpoint, started_at, utcnow(), error=message)
                self.ledger.mark_school_failed(attempt_id, message)
                return AttemptStatus.FAILED.value
            self.ledger.append_endpoint_log_entry(attempt_id, endpoint, started_at, utcnow())

        self.ledger.mark_school_completed(attempt_id)
        log.info(f"Run {run_id}: {system.school_name} completed")
        return AttemptStatus.COMPLETED.value

    @staticmethod
    def _check_cancelled(run_id: int, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            log.info(f"Run {run_id}: serial track observed cancellation")
            raise SyncCancelled(f"Run {run_id} cancelled")
