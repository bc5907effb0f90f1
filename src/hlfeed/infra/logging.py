"""Structured logging setup shared by the client, runner and dashboard."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import IO, Any, Dict, Optional

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))) | {"message", "taskName"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with ``extra=`` fields promoted to the top level.

    Client code logs with ``extra={"event": ..., "identifier": ...}`` so the
    output can be filtered by event name downstream.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 - logging interface name
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        payload.update((key, value) for key, value in vars(record).items() if key not in _RECORD_ATTRS)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(payload, default=str)


def _level(name: str, fallback: int) -> int:
    value = logging.getLevelName(name.upper())
    return value if isinstance(value, int) else fallback


def configure_logging(
    default_level: str = "INFO",
    stream: Optional[IO[str]] = None,
    library_level: str = "WARNING",
) -> None:
    """Install a JSON handler on the root logger.

    ``LOG_LEVEL`` overrides ``default_level``. The ``websockets`` library logs
    every frame at DEBUG, so it is held at ``library_level`` unless
    ``WEBSOCKETS_LOG_LEVEL`` says otherwise.
    """

    level = _level(os.getenv("LOG_LEVEL", default_level), logging.INFO)
    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    logging.getLogger("websockets").setLevel(
        _level(os.getenv("WEBSOCKETS_LOG_LEVEL", library_level), logging.WARNING)
    )


__all__ = ["JsonFormatter", "configure_logging"]
