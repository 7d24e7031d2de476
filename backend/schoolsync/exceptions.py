"""Error types shared across the sync engine."""

from typing import Optional


class ScopeError(ValueError):
    """The scope request is malformed (no mode, several modes, unknown endpoints)."""


class LedgerError(RuntimeError):
    """The run or its school attempt rows could not be created."""


class ConnectorError(Exception):
    """An endpoint step against an external API failed."""

    def __init__(self, message: str, source: Optional[str] = None, endpoint: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.source = source
        self.endpoint = endpoint
        self.status_code = status_code


class SyncCancelled(Exception):
    """Raised to unwind a track once the run's cancellation signal is observed."""


class RunNotFoundError(LookupError):
    """No sync run with the given id."""


class RunStateError(ValueError):
    """The run is not in a state that allows the requested operation."""
