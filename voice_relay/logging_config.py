"""Logging setup for the relay: plain console lines or one JSON object per record."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

# Attributes every LogRecord carries; anything else arrived through ``extra=``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

# Libraries that log every gateway event or frame at INFO
NOISY_LOGGERS = ("discord", "discord.ext.voice_recv", "websockets")


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Fields attached to ``record`` by the ``extra`` argument of a log call."""
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with any ``extra`` fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = record_extras(record)
        entry.update(
            timestamp=datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def is_production() -> bool:
    env = os.environ.get("VOICE_RELAY_ENV", "development").lower()
    return env in ("production", "prod", "staging")


def configure_logging(
    level: str = "INFO",
    json_logs: Optional[bool] = None,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """Replace the root handlers with a single stdout handler.

    JSON output is used when ``json_logs`` is set, or when it is left as None
    and ``VOICE_RELAY_ENV`` names a production environment. Loggers listed in
    ``quiet`` are held at WARNING.
    """
    if json_logs is None:
        json_logs = is_production()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if json_logs:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers[:] = [handler]

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
