"""
Structured JSON logging for the escrow packages.

Every record under the ``escrow_kernel`` logger tree is written as one JSON
line:

    {"ts": "...", "level": "INFO", "logger": "escrow_kernel.services.escrow",
     "message": "escrow_funded", "account_id": "...", "amount": "60000.00"}

The fields come from four places, in this order. Later sources never
overwrite earlier keys.

1. ts, level, logger and message.
2. Request-scoped fields from ``LogContext`` (correlation, account,
   request and actor ids).
3. The ``extra={...}`` mapping passed at the call site.
4. For ``logger.exception`` calls, ``exc_type``, ``exc_message``,
   ``exc_code`` and each public attribute of the exception as ``exc_<name>``,
   plus the formatted traceback.
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
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any
from uuid import UUID

_EMPTY: MappingProxyType = MappingProxyType({})
_context: ContextVar[MappingProxyType] = ContextVar("escrow_log_context", default=_EMPTY)


class LogContext:
    """Request-scoped log fields, isolated per thread and per asyncio task."""

    FIELDS = ("correlation_id", "account_id", "request_id", "actor_id")

    @classmethod
    def _merged(cls, updates: dict[str, Any]) -> MappingProxyType:
        unknown = set(updates) - set(cls.FIELDS)
        if unknown:
            raise TypeError(f"unknown log context field(s): {sorted(unknown)}")
        merged = dict(_context.get())
        merged.update({k: str(v) for k, v in updates.items() if v is not None})
        return MappingProxyType(merged)

    @classmethod
    def set(cls, **fields: Any) -> None:
        """Set fields for the rest of the current context; None values are skipped."""
        _context.set(cls._merged(fields))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_context.get())

    @classmethod
    def clear(cls) -> None:
        _context.set(_EMPTY)

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[type["LogContext"]]:
        """Set fields for the duration of a ``with`` block, then restore."""
        token = _context.set(cls._merged(fields))
        try:
            yield cls
        finally:
            _context.reset(token)


_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return str(obj)


class StructuredFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_context.get())

        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                payload.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)

    @staticmethod
    def _exception_fields(exc: BaseException) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        if hasattr(exc, "code"):
            fields["exc_code"] = exc.code
        for name, value in vars(exc).items():
            if not name.startswith("_") and name not in ("args", "code"):
                fields[f"exc_{name}"] = value
        return fields


_ROOT = "escrow_kernel"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{_ROOT}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach a JSON handler to the ``escrow_kernel`` tree. Only the first call has effect."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

        root = logging.getLogger(_ROOT)
        root.setLevel(level)
        root.propagate = False

        if handler is None:
            handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(StructuredFormatter())
        root.addHandler(handler)


def reset_logging() -> None:
    """Detach handlers and allow ``configure_logging`` to run again (tests only)."""
    global _configured
    with _lock:
        _configured = False
        root = logging.getLogger(_ROOT)
        root.handlers.clear()
        root.setLevel(logging.WARNING)
