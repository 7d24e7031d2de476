"""School data sync service: ManageBac and Nexquare into a central store."""

from schoolsync.logging_config import install_trace_level

__version__ = "1.0.0"

install_trace_level()
