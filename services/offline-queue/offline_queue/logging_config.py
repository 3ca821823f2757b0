"""Logging setup for the queue service.

Records go to stdout as one JSON object per line unless text output is asked
for. The trace id is the request id on the HTTP surface and the mutation id
while a mutation is being dispatched; the target entity rides along with it.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

trace_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("trace_id", default=None)
entity_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("entity_id", default=None)

TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
QUIET_LOGGERS = ("httpx", "httpcore", "redis")


def get_trace_id() -> str | None:
    return trace_id_var.get()


@contextmanager
def trace_context(trace_id: str, entity_id: str | None = None) -> Iterator[None]:
    trace_token = trace_id_var.set(trace_id)
    entity_token = entity_id_var.set(entity_id)
    try:
        yield
    finally:
        entity_id_var.reset(entity_token)
        trace_id_var.reset(trace_token)


class JSONFormatter(logging.Formatter):
    def __init__(self, service: str = "offline-queue") -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
        }

        trace_id = get_trace_id()
        if trace_id:
            log_entry["trace_id"] = trace_id
        entity_id = entity_id_var.get()
        if entity_id:
            log_entry["entity_id"] = entity_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            log_entry.update(extra_fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Install one stdout handler on the root logger.

    Explicit arguments win over ``LOG_LEVEL`` and ``LOG_FORMAT``. Unknown
    level names fall back to INFO.
    """
    log_format = (log_format or os.environ.get("LOG_FORMAT") or "json").strip().lower()
    level_name = (level or os.environ.get("LOG_LEVEL") or "INFO").strip().upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))
