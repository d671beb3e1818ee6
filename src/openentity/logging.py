"""
OpenEntity Structured Logging

Every component logs under the "openentity" namespace through stdlib
logging. Context goes in `extra=`: the well-known keys below are lifted
into the output, anything else can be passed as a dict under "_extra".

Usage:
    from openentity.logging import get_logger

    logger = get_logger("openentity.tools.registry")
    logger.warning("Tool load failed", extra={"tool_name": "scraper", "stage": "security"})

The default handler is configured on import from ENTITY_LOG_LEVEL and
ENTITY_LOG_JSON; call configure_logging() to change it.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "openentity"

# Lifted from LogRecord attributes, in output order.
STRUCTURED_KEYS = (
    "tool_name",
    "file_path",
    "stage",
    "event_type",
    "provider",
    "driver",
    "model",
    "error_count",
    "error",
    "duration_ms",
    "command",
)

_BASE_KEYS = ("timestamp", "level", "logger", "message")


class EntityFormatter(logging.Formatter):
    """One line per record: `ts LEVEL logger: message | key=value ...`, or JSON."""

    def __init__(self, json_output: bool = False):
        super().__init__()
        self._json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        fields = self._fields(record)
        if self._json_output:
            if record.exc_info:
                fields["exc_info"] = self.formatException(record.exc_info)
            return json.dumps(fields, default=str)

        context = {k: v for k, v in fields.items() if k not in _BASE_KEYS}
        line = f"[{fields['timestamp']}] {record.levelname:8s} {record.name}: {fields['message']}"
        if context:
            line += " | " + " ".join(f"{k}={v}" for k, v in context.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line

    @staticmethod
    def _fields(record: logging.LogRecord) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in STRUCTURED_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                fields[key] = value

        extra = getattr(record, "_extra", None)
        if isinstance(extra, dict):
            fields.update(extra)
        return fields


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """(Re)install the single stderr handler on the "openentity" logger.

    Unknown level names fall back to INFO. Records do not propagate to
    the root logger, so host applications keep their own formatting.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(EntityFormatter(json_output=json_output))
    logger.addHandler(handler)
    logger.propagate = False


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


configure_logging(
    level=os.environ.get("ENTITY_LOG_LEVEL", "INFO"),
    json_output=os.environ.get("ENTITY_LOG_JSON", "").lower() in ("1", "true", "yes"),
)
