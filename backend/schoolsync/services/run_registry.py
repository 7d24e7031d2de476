"""Process-wide cancel handles for runs started from the control surface."""

import asyncio
import logging
from typing import Dict

log = logging.getLogger(__name__)


class ActiveRunRegistry:
    """
    Maps run id -> cancellation event.

    Only mutated from the event loop thread, so no lock is needed. Runs from
    the recurring trigger or another process never appear here; those can
    only be cancelled in the ledger.
    """

    def __init__(self):
        self._events: Dict[int, asyncio.Event] = {}

    def register(self, run_id: int) -> asyncio.Event:
        event = asyncio.Event()
        self._events[run_id] = event
        log.debug(f"Registered cancel handle for run {run_id}")
        return event

    def cancel(self, run_id: int) -> bool:
        """Signals the run's event; False when this process holds no handle."""
        event = self._events.get(run_id)
        if event is None:
            return False
        event.set()
        log.info(f"Cancellation signalled for run {run_id}")
        return True

    def remove(self, run_id: int) -> None:
        self._events.pop(run_id, None)

    def __contains__(self, run_id: int) -> bool:
        return run_id in self._events

    def __len__(self) -> int:
        return len(self._events)


active_runs = ActiveRunRegistry()
