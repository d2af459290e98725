"""
approval_kernel.logging_config -- One JSON object per log line.

Every logger in the approval packages hangs off the ``approval_kernel``
logger, so a single ``configure_logging`` call decides where records go.
Request-scoped fields (correlation id, solicitation, actor, action type)
live in a ContextVar and are stamped onto every record emitted while they
are bound.  Kernel exceptions logged with ``exc_info`` contribute their
code and structured attributes as ``exc_*`` fields.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, TextIO
from uuid import UUID

_ROOT = "approval_kernel"

CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "solicitation_id",
    "actor_id",
    "action_type",
)

_context: ContextVar[Mapping[str, str]] = ContextVar("approval_log_context", default={})


def _check_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"unknown log context field(s): {', '.join(sorted(unknown))}")


class LogContext:
    """Request-scoped log fields, safe across threads and asyncio tasks.

    Values are stored as strings; UUIDs and enums are converted on entry.
    ``None`` means "leave unchanged" for ``set`` and ``bind``.
    """

    @staticmethod
    def set(**fields: Any) -> None:
        _check_fields(fields)
        merged = dict(_context.get())
        merged.update({k: _as_text(v) for k, v in fields.items() if v is not None})
        _context.set(merged)

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_context.get())

    @staticmethod
    def clear() -> None:
        _context.set({})

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """Bind fields for the duration of a ``with`` block, then restore."""
        _check_fields(fields)
        merged = dict(_context.get())
        merged.update({k: _as_text(v) for k, v in fields.items() if v is not None})
        token = _context.set(merged)
        try:
            yield
        finally:
            _context.reset(token)


def _as_text(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _json_default(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return sorted(value, key=str) if isinstance(value, (set, frozenset)) else list(value)
    return str(value)


class StructuredFormatter(logging.Formatter):
    """Render a record as ``{"ts", "level", "logger", "message", ...}``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(LogContext.get_all())
        for key, value in self._extra_fields(record):
            payload.setdefault(key, value)
        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record.exc_info))
        return json.dumps(payload, default=_json_default)

    @staticmethod
    def _extra_fields(record: logging.LogRecord) -> Iterator[tuple[str, Any]]:
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and not key.startswith("_"):
                yield key, value

    def _exception_fields(self, exc_info) -> dict[str, Any]:
        exc = exc_info[1]
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        for name, value in vars(exc).items():
            if name not in ("args", "code") and not name.startswith("_"):
                fields[f"exc_{name}"] = value
        fields["traceback"] = self.formatException(exc_info)
        return fields


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """``get_logger("services.orchestrator")`` -> ``approval_kernel.services.orchestrator``."""
    return logging.getLogger(f"{_ROOT}.{name}")


_setup_lock = threading.Lock()
_handler: logging.Handler | None = None


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """Install one JSON handler on the approval logger tree.

    Calling again before ``reset_logging`` does nothing.  ``level`` may be
    a logging constant or a name such as ``"DEBUG"``.
    """
    global _handler
    with _setup_lock:
        if _handler is not None:
            return
        root = logging.getLogger(_ROOT)
        root.setLevel(logging.getLevelName(level.upper()) if isinstance(level, str) else level)
        root.propagate = False
        _handler = handler or logging.StreamHandler(stream or sys.stderr)
        _handler.setFormatter(StructuredFormatter())
        root.addHandler(_handler)


def reset_logging() -> None:
    """Remove the installed handler.  Used by tests."""
    global _handler
    with _setup_lock:
        root = logging.getLogger(_ROOT)
        root.handlers.clear()
        root.setLevel(logging.WARNING)
        _handler = None
