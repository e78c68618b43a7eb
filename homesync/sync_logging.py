from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

_ROOT = "HOMESYNC"


def _level_from_name(level: str) -> int:
    numeric = logging.getLevelName(level.strip().upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return numeric


def get_logger(name: str = _ROOT) -> logging.Logger:
    """
    Structured logger for HOMESYNC.* events.

    Each record is one JSON line on stdout; pass structured data with
    extra={"fields": {...}}.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level = logging.getLevelName(os.environ.get("HOMESYNC_LOG_LEVEL", "info").strip().upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def set_level(level: str) -> None:
    """Apply a textual level ("debug", "info", ...) to every homesync logger."""
    numeric = _level_from_name(level)
    for name in list(logging.root.manager.loggerDict):
        if name.split(".")[0] in (_ROOT, "homesync"):
            logging.getLogger(name).setLevel(numeric)
    logging.getLogger(_ROOT).setLevel(numeric)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload.update(fields)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)
