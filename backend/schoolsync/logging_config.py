"""Logging setup: custom TRACE level plus per-mode logger levels."""

import logging

TRACE = 5


def install_trace_level() -> None:
    """Register the TRACE level and a ``Logger.trace`` method (idempotent)."""
    if getattr(logging, "TRACE", None) == TRACE:
        return
    logging.TRACE = TRACE
    logging.addLevelName(TRACE, "TRACE")

    def trace_method(self, msg, *args, **kwargs):
        if self.isEnabledFor(TRACE):
            self._log(TRACE, msg, args, **kwargs)

    logging.Logger.trace = trace_method


def setup_logging(log_level_str: str) -> None:
    """Configure the root logger once, early in application startup.

    ``VERBOSE`` keeps the root at DEBUG but opens up HTTP and connector
    traces; ``TRACE`` turns everything up to the custom level.
    """
    install_trace_level()
    log_level_str = log_level_str.upper()
    log_level = TRACE if log_level_str == "TRACE" else getattr(logging, log_level_str, logging.INFO)
    if logging.getLogger().hasHandlers():
        return

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)-8s - %(message)s'
    )
    root = logging.getLogger()

    if log_level_str == "VERBOSE":
        root_level = logging.DEBUG
        http_level = logging.DEBUG
        connectors_level = TRACE
        sync_level = logging.DEBUG
        root.info("VERBOSE mode enabled: HTTP details and connector traces active for debugging.")
    elif log_level_str == "TRACE":
        root_level = TRACE
        http_level = TRACE
        connectors_level = TRACE
        sync_level = TRACE
    else:
        root_level = log_level
        http_level = logging.WARNING
        connectors_level = logging.DEBUG if log_level <= logging.DEBUG else log_level
        sync_level = root_level

    root.setLevel(root_level)
    for name in ("httpcore", "httpcore.http11", "httpx"):
        logging.getLogger(name).setLevel(http_level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.INFO if root_level <= logging.INFO else root_level)
    logging.getLogger("schoolsync.connectors").setLevel(connectors_level)
    logging.getLogger("schoolsync.services").setLevel(sync_level)

    if log_level_str == "TRACE":
        root.trace("Trace logging enabled at startup (verbose details).")
    else:
        root.debug("Debug logging enabled at startup.")
