"""Structured JSON logging for the sync core.

Every record carries the correlation id of the sync pass that produced it
and, when emitted from inside a polling loop, the asyncio task name.
"""

import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from .correlation import get_correlation_id

DEFAULT_LOG_LEVEL = "INFO"


def _current_task_name() -> str | None:
    try:
        task = asyncio.current_task()
    except RuntimeError:
        return None
    return task.get_name() if task is not None else None


class JsonFormatter(logging.Formatter):
    """JSON formatter that includes correlation ID and loop task name."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_obj["correlationId"] = correlation_id

        task_name = _current_task_name()
        if task_name:
            log_obj["task"] = task_name

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_obj.update(record.extra_fields)

        return json.dumps(log_obj, default=str)


def get_logger(name: str) -> logging.Logger:
    """Get a logger configured for JSON output.

    Level comes from ROOMCAL_LOG_LEVEL (default INFO).
    """
    logger = logging.getLogger(name)

    # Only configure if no handlers (avoid duplicate handlers)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(os.environ.get("ROOMCAL_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper())
        logger.propagate = False

    return logger
