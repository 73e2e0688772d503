"""Root logging setup driven by the node's verbosity option.

All modules log through ``logging.getLogger(__name__)``; this module only
decides where records go and at which level.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import UTC, datetime

_SILENT = logging.CRITICAL + 10

_VERBOSITY_TO_LEVEL: dict[str, int] = {
    "silent": _SILENT,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


def level_for_verbosity(verbosity: str) -> int:
    """Map a normalized verbosity name (see ``NodeSettings.verbosity``) to a level."""
    try:
        return _VERBOSITY_TO_LEVEL[verbosity]
    except KeyError:
        raise ValueError(f"unknown verbosity level {verbosity!r}") from None


class _JsonFormatter(logging.Formatter):
    """Render logs as compact JSON for machine-readable ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object | None] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


def setup_logging(verbosity: str = "info", json_output: bool = False) -> None:
    """Configure the root logger once, replacing any previous handlers."""

    root_logger: logging.Logger = logging.getLogger()
    root_logger.setLevel(level_for_verbosity(verbosity))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream=sys.stdout)
    if json_output:
        formatter: logging.Formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)


def attach_windows_event_log(appname: str) -> logging.Handler:
    """Also send records to the Windows event log (service mode only).

    ``NTEventLogHandler`` needs pywin32; it raises if that is unavailable.
    """
    handler = logging.handlers.NTEventLogHandler(appname)
    handler.setFormatter(logging.Formatter("%(name)s %(message)s"))
    logging.getLogger().addHandler(handler)
    return handler


__all__ = ["attach_windows_event_log", "level_for_verbosity", "setup_logging"]
