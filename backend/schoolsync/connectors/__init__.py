"""Connectors for the external student-information APIs."""

from typing import Any, Callable, Dict, Optional

from schoolsync.connectors.base import BaseConnector, SystemConfig, SyncContext
from schoolsync.connectors.managebac_connector import ManageBacConnector
from schoolsync.connectors.nexquare_connector import NexquareConnector
from schoolsync.constants.sync_status import SchoolSource

CONNECTOR_TYPES: Dict[str, Callable[..., BaseConnector]] = {
    SchoolSource.MANAGEBAC.value: ManageBacConnector,
    SchoolSource.NEXQUARE.value: NexquareConnector,
}


class ConnectorFactory:
    """Builds a fresh connector instance for a source tag.

    Tests swap ``connector_types`` for fakes; ``config`` is passed to every
    instance (timeouts, retry settings).
    """

    def __init__(self, connector_types: Optional[Dict[str, Callable[..., BaseConnector]]] = None,
                 config: Optional[Dict[str, Any]] = None):
        self.connector_types = connector_types or CONNECTOR_TYPES
        self.config = config or {}

    def create(self, source: str) -> BaseConnector:
        connector_class = self.connector_types.get(source)
        if connector_class is None:
            raise ValueError(f"Unknown connector source: {source}")
        return connector_class(self.config)


__all__ = [
    "BaseConnector",
    "SystemConfig",
    "SyncContext",
    "ManageBacConnector",
    "NexquareConnector",
    "CONNECTOR_TYPES",
    "ConnectorFactory",
]
