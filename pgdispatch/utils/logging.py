"""Logging helpers for pgdispatch.

Loggers live under the ``pgdispatch`` namespace. Each top-level request or
transaction runs inside a :func:`request_scope`, and every record logged
within it carries that scope's ``request_id``, so the statements of one
transaction can be followed across connections and threads.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

from pgdispatch._serialization import encode_json

if TYPE_CHECKING:
    from collections.abc import Generator
    from logging import LogRecord
    from typing import TextIO

__all__ = (
    "JSONLogFormatter",
    "RequestIDFilter",
    "configure_logging",
    "current_request_id",
    "get_logger",
    "log_with_context",
    "request_scope",
)

_request_id: ContextVar[str | None] = ContextVar("pgdispatch_request_id", default=None)


def current_request_id() -> str | None:
    return _request_id.get()


@contextmanager
def request_scope() -> Generator[str, None, None]:
    """Tag everything logged in the block with a request ID.

    Nested scopes keep the outer ID, so the requests of a transaction share it.
    """
    current = _request_id.get()
    if current is not None:
        yield current
        return
    request_id = uuid.uuid4().hex[:12]
    token = _request_id.set(request_id)
    try:
        yield request_id
    finally:
        _request_id.reset(token)


class RequestIDFilter(logging.Filter):
    def filter(self, record: LogRecord) -> bool:
        record.request_id = _request_id.get()  # type: ignore[attr-defined]
        return True


class JSONLogFormatter(logging.Formatter):
    """One JSON object per record.

    Fields passed through ``extra={"extra_fields": {...}}``, such as
    ``connection_id``, ``statement_name`` or ``sqlstate``, are merged in.
    """

    def format(self, record: LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None) or _request_id.get()
        if request_id:
            entry["request_id"] = request_id
        entry.update(getattr(record, "extra_fields", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return encode_json(entry)  # type: ignore[return-value]


def get_logger(name: str | None = None) -> logging.Logger:
    """Logger ``pgdispatch.<name>``, tagged with the current request ID."""
    if name is None:
        return logging.getLogger("pgdispatch")
    if not name.startswith("pgdispatch"):
        name = f"pgdispatch.{name}"
    logger = logging.getLogger(name)
    if not any(isinstance(f, RequestIDFilter) for f in logger.filters):
        logger.addFilter(RequestIDFilter())
    return logger


def configure_logging(level: str = "INFO", *, json: bool = True, stream: TextIO | None = None) -> None:
    """Send pgdispatch logs to ``stream`` (stdout by default), as JSON or plain text.

    The package logger stops propagating to the root logger.
    """
    package_logger = logging.getLogger("pgdispatch")
    package_logger.setLevel(level.upper())
    package_logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    if json:
        handler.setFormatter(JSONLogFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"))
        handler.addFilter(RequestIDFilter())
    package_logger.addHandler(handler)
    package_logger.propagate = False


def log_with_context(logger: logging.Logger, level: int, message: str, **extra_fields: Any) -> None:
    """Log ``message`` with ``extra_fields`` attached as structured fields."""
    if logger.isEnabledFor(level):
        logger.log(level, message, extra={"extra_fields": extra_fields}, stacklevel=2)
