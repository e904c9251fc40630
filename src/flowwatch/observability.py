from __future__ import annotations

import json
import logging
import sys
from threading import Lock

_ROOT_LOGGER = "flowwatch"


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in ("task_id", "issue_type", "rule_id"):
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    """Return a logger. Safe to call before configure_logging."""
    return logging.getLogger(name)


def configure_logging(*, level: str = "INFO", json_output: bool = True) -> None:
    global _configured
    with _configure_lock:
        root = logging.getLogger(_ROOT_LOGGER)
        root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
        if _configured:
            return
        handler = logging.StreamHandler(sys.stderr)
        if json_output:
            handler.setFormatter(_JsonFormatter())
        else:
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
            )
        root.addHandler(handler)
        _configured = True
