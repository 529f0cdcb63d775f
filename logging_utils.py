# logging_utils.py
"""Logging setup: one stdout handler, optional JSON lines, secrets scrubbed from ``extra``."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_SECRET_MARKERS = ("api_key", "apikey", "token", "authorization", "secret", "password")
REDACTED = "[redacted]"

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_STANDARD_ATTRS = frozenset(logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
}


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class RedactingFilter(logging.Filter):
    """Blank out secret-looking ``extra`` values before they reach a formatter."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key in record_extras(record):
            if is_secret_key(key):
                setattr(record, key, REDACTED)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line: the event name plus its structured ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        data.update(record_extras(record))

        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            data["stack"] = self.formatStack(record.stack_info)
        return json.dumps(data, default=str)


def _resolve_log_level(level_name: str) -> int:
    numeric = logging.getLevelName((level_name or "INFO").upper())
    return numeric if isinstance(numeric, int) else logging.INFO


def configure_logging(level_name: str, json_enabled: bool) -> None:
    """Install a single stdout handler on the root logger."""

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(_resolve_log_level(level_name))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if json_enabled else logging.Formatter(_DEFAULT_FORMAT))
    handler.addFilter(RedactingFilter())
    root.addHandler(handler)
