"""JSON log formatting for the extraction engine.

Modules log snake_case event names and pass context through ``extra``::

    logger.info("cache_hit", extra={"content_hash": digest})

``JsonFormatter`` folds every non-standard record attribute into the output
object, so no per-call helper is needed.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}

_configured = False


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        if ts.endswith("+00:00"):
            ts = ts[:-6] + "Z"
        payload: dict[str, Any] = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_") or value is None:
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=True)


def configure_logging(level: str = "INFO") -> None:
    global _configured  # noqa: PLW0603
    if _configured:
        return
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    handler = logging.StreamHandler()
    handler.setLevel(resolved)
    handler.setFormatter(JsonFormatter())
    logger = logging.getLogger("receipt_engine")
    logger.setLevel(resolved)
    logger.handlers = [handler]
    logger.propagate = False
    _configured = True
