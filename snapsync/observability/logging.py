"""
Structured Logging: Session-Correlated JSON Records

Every controller, throttler and poller runs inside tasks spawned while a
session is active. The session layer wraps that work in
``log_context(user_id=..., session_id=...)``; the fields live in a
ContextVar, so tasks created inside the block inherit them and records
emitted long after the block exits still name their session.

JsonFormatter renders one JSON object per line:

    {"@timestamp": ..., "level": "INFO", "logger": ..., "message": ...,
     "user_id": ..., "session_id": ..., "task": ..., <extra fields>}
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import IntEnum
from functools import partialmethod
from typing import Any, Iterator, Optional, TextIO, Union


class LogLevel(IntEnum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def parse(cls, value: Union[str, int, "LogLevel"]) -> "LogLevel":
        """Accept ``"debug"``, ``" WARNING "``, ``40`` or a member."""
        if isinstance(value, str):
            return cls[value.strip().upper()]
        return cls(int(value))


_session_fields: ContextVar[dict[str, Any]] = ContextVar("snapsync_log_fields", default={})

# Session identity first so it reads at the head of every line
_LEADING_FIELDS = ("user_id", "session_id")

# Attributes every logging.LogRecord carries; anything else came from extra=
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _current_task_name() -> Optional[str]:
    try:
        task = asyncio.current_task()
    except RuntimeError:
        return None
    return task.get_name() if task is not None else None


# =============================================================================
# FORMATTER
# =============================================================================
class JsonFormatter(logging.Formatter):
    """Render records as single-line JSON with session fields attached."""

    def format(self, record: logging.LogRecord) -> str:
        fields = current_log_context()
        body: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _LEADING_FIELDS:
            if key in fields:
                body[key] = fields[key]

        task_name = _current_task_name()
        if task_name:
            body["task"] = task_name

        body.update((k, v) for k, v in fields.items() if k not in body)
        body.update(
            (k, v) for k, v in vars(record).items()
            if k not in _STANDARD_ATTRS and not k.startswith("_")
        )

        if record.exc_info and record.exc_info[0] is not None:
            body["error_type"] = record.exc_info[0].__name__
            body["exception"] = self.formatException(record.exc_info)

        return json.dumps(body, default=str)


# =============================================================================
# KEYWORD-FIELD LOGGER
# =============================================================================
class StructuredLogger:
    """
    Thin wrapper that turns keyword arguments into record fields.

        log = StructuredLogger(__name__).with_extra(component="janitor")
        log.info("sweep", removed=3)
    """

    __slots__ = ("_logger", "_bound")

    def __init__(self, name: str, **bound: Any) -> None:
        self._logger = logging.getLogger(name)
        self._bound = bound

    def with_extra(self, **fields: Any) -> StructuredLogger:
        return StructuredLogger(self._logger.name, **{**self._bound, **fields})

    def log(self, level: int, message: str, *, exc_info: Any = None, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(level, message, exc_info=exc_info, extra={**self._bound, **fields})

    debug = partialmethod(log, logging.DEBUG)
    info = partialmethod(log, logging.INFO)
    warning = partialmethod(log, logging.WARNING)
    error = partialmethod(log, logging.ERROR)
    critical = partialmethod(log, logging.CRITICAL)


# =============================================================================
# CONTEXT
# =============================================================================
@contextmanager
def log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """Layer ``fields`` over the current context for the duration of the block."""
    merged = {**_session_fields.get(), **fields}
    token = _session_fields.set(merged)
    try:
        yield merged
    finally:
        _session_fields.reset(token)


def current_log_context() -> dict[str, Any]:
    return dict(_session_fields.get())


def setup_logging(
    level: Union[str, int, LogLevel] = LogLevel.INFO,
    json_output: bool = False,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Install a single root handler.

    ``json_output`` selects JsonFormatter; otherwise a plain text line that
    still shows the session user. asyncio's own chatter is held at WARNING.
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.addFilter(_inject_user)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s [%(user_id)s] %(name)s: %(message)s"
        ))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(LogLevel.parse(level))
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def _inject_user(record: logging.LogRecord) -> bool:
    record.user_id = _session_fields.get().get("user_id", "-")
    return True
