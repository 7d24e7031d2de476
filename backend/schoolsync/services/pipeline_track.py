"""
Wavefront pipeline track.

Systems and endpoints form an m x n grid; cell (i, j) runs endpoint j for
system i once cells (i-1, j) and (i, j-1) are done. Every cell owns one
completion event, set exactly once when the cell finishes, whatever the
outcome, so skips propagate through the grid instead of deadlocking it.
"""

import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

from schoolsync.connectors import ConnectorFactory
from schoolsync.connectors.base import BaseConnector, SystemConfig, SyncContext
from schoolsync.constants.sync_status import CellOutcome
from schoolsync.services.run_ledger import RunLedger, utcnow
from schoolsync.services.serial_track import error_text

log = logging.getLogger(__name__)


class PipelineTrack:
    def __init__(self, ledger: RunLedger, connector_factory: ConnectorFactory):
        self.ledger = ledger
        self.connector_factory = connector_factory

    async def run(self, run_id: int, items: Sequence[Tuple[SystemConfig, int]], endpoints: List[str],
                  context: SyncContext, cancel_event: Optional[asyncio.Event] = None) -> List[List[CellOutcome]]:
        """Returns the outcome of every cell, indexed [system][endpoint]."""
        m, n = len(items), len(endpoints)
        if m == 0:
            return []
        cancel_event = cancel_event or asyncio.Event()
        log.info(f"Run {run_id}: pipeline track starting with a {m}x{n} grid")

        if n == 0:
            for _, attempt_id in items:
                self.ledger.mark_school_running(attempt_id)
                self.ledger.mark_school_completed(attempt_id)
            return [[] for _ in items]

        grid = _Grid(m, n)
        # one instance per run; every call carries its school id explicitly
        connector = self.connector_factory.create(items[0][0].source)
        try:
            await asyncio.gather(*(
                self._run_cell(run_id, grid, connector, items, endpoints, context, cancel_event, i, j)
                for i in range(m) for j in range(n)
            ))
        finally:
            await connector.aclose()

        log.info(f"Run {run_id}: pipeline track finished")
        return grid.outcomes

    async def _run_cell(self, run_id: int, grid: "_Grid", connector: BaseConnector,
                        items: Sequence[Tuple[SystemConfig, int]], endpoints: List[str], context: SyncContext,
                        cancel_event: asyncio.Event, i: int, j: int) -> None:
        system, attempt_id = items[i]
        endpoint = endpoints[j]
        try:
            if i > 0:
                await grid.done[i - 1][j].wait()
            if j > 0:
                await grid.done[i][j - 1].wait()

            if cancel_event.is_set() or grid.row_failed[i]:
                log.trace(f"Run {run_id}: cell ({i},{j}) {system.school_name}/{endpoint} skipped")
                grid.outcomes[i][j] = CellOutcome.SKIPPED
                return

            if j == 0:
                self.ledger.mark_school_running(attempt_id)
                log.info(f"Run {run_id}: syncing {system.school_name} ({system.source}:{system.school_id})")
            self.ledger.set_current_endpoint(attempt_id, endpoint)

            started_at = utcnow()
            try:
                await connector.run_endpoint(system, endpoint, context)
            except Exception as e:
                message = error_text(e)
                grid.row_failed[i] = True
                grid.outcomes[i][j] = CellOutcome.FAILED
                log.error(f"Run {run_id}: {system.school_name} failed on '{endpoint}': {message}")
                self.ledger.append_endpoint_log_entry(attempt_id, endpoint, started_at, utcnow(), error=message)
                self.ledger.mark_school_failed(attempt_id, message)
                return

            grid.outcomes[i][j] = CellOutcome.COMPLETED
            self.ledger.append_endpoint_log_entry(attempt_id, endpoint, started_at, utcnow())
            if j == grid.n - 1 and all(o == CellOutcome.COMPLETED for o in grid.outcomes[i]):
                self.ledger.mark_school_completed(attempt_id)
                log.info(f"Run {run_id}: {system.school_name} completed")
        finally:
            grid.done[i][j].set()


class _Grid:
    """Completion events and outcomes for an m x n wavefront."""

    def __init__(self, m: int, n: int):
        self.m = m
        self.n = n
        self.done = [[asyncio.Event() for _ in range(n)] for _ in range(m)]
        self.outcomes = [[CellOutcome.SKIPPED for _ in range(n)] for _ in range(m)]
        self.row_failed = [False] * m
