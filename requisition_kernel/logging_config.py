"""
Structured JSON logging for the requisition backend.

Every line is one JSON object: a fixed envelope (``ts``, ``level``,
``logger``, ``message``), the action context bound by the dispatcher or the
notification worker, then the ``extra`` fields of the call.  Event names are
the message (``requisition_transitioned``, ``ledger_conflict``, ...).

Kernel errors logged with ``exc_info`` contribute their ``code`` and their
``log_fields()`` as ``exc_*`` keys, so a failed action can be traced to
the requisition, version or transition involved without parsing text.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import dataclasses
import json
import logging
import sys
import threading
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any, Iterator

from requisition_kernel.exceptions import RequisitionKernelError

# ---------------------------------------------------------------------------
# Action context
# ---------------------------------------------------------------------------


class LogContext:
    """
    Fields describing the action in progress, merged into every line.

    ``correlation_id`` ties together all lines of one invoked action (or one
    delivered notification); ``action`` is the registered action name;
    ``actor_id`` the calling user; ``request_id`` the requisition, dispatch
    or batch the action targets.
    """

    FIELDS = ("correlation_id", "action", "actor_id", "request_id")

    _vars: dict[str, ContextVar[str | None]] = {
        name: ContextVar(f"log_{name}", default=None) for name in FIELDS
    }

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return {
            name: value
            for name, var in cls._vars.items()
            if (value := var.get()) is not None
        }

    @classmethod
    def clear(cls) -> None:
        for var in cls._vars.values():
            var.set(None)

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[None]:
        """Set fields for the block, restoring the previous values on exit.

        None values are skipped, so an outer binding shows through.
        """
        unknown = set(fields) - set(cls.FIELDS)
        if unknown:
            raise TypeError(f"Unknown log context field(s): {sorted(unknown)}")
        tokens = [
            (cls._vars[name], cls._vars[name].set(str(value)))
            for name, value in fields.items()
            if value is not None
        ]
        try:
            yield
        finally:
            for var, token in reversed(tokens):
                var.reset(token)

    @classmethod
    def for_action(
        cls, action: str, actor_id: Any = None, request_id: Any = None
    ):
        """Bind a fresh correlation id plus the action's identity."""
        return cls.bind(
            correlation_id=uuid.uuid4().hex,
            action=action,
            actor_id=str(actor_id).strip() if actor_id not in (None, "") else None,
            request_id=str(request_id).strip() if request_id not in (None, "") else None,
        )


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------

# Attributes every LogRecord has; anything else on the record came from extra=.
RESERVED_RECORD_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _encode(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    return str(obj)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    if isinstance(exc, RequisitionKernelError):
        fields["exc_code"] = exc.code
        fields.update({f"exc_{k}": v for k, v in exc.log_fields().items()})
    return fields


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        envelope = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Call-site extras override the bound context; the envelope wins over both.
        payload: dict[str, Any] = dict(LogContext.get_all())
        payload.update(
            (key, val) for key, val in vars(record).items() if key not in RESERVED_RECORD_KEYS
        )
        payload = {**envelope, **{k: v for k, v in payload.items() if k not in envelope}}

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_encode)


# ---------------------------------------------------------------------------
# Logger factory and initialization
# ---------------------------------------------------------------------------

_LOGGER_PREFIX = "requisition_kernel"


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``requisition_kernel`` namespace.

    The services layer logs here too so one handler sees every action.
    """
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach one JSON handler to the ``requisition_kernel`` logger.

    Idempotent: only the first call in a process takes effect until
    ``reset_logging()``.  ``level`` may be a number or a name (``"DEBUG"``).
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root_logger = logging.getLogger(_LOGGER_PREFIX)
    root_logger.setLevel(level.upper() if isinstance(level, str) else level)
    root_logger.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    root_logger.addHandler(h)


def reset_logging() -> None:
    """Undo ``configure_logging``. FOR TESTING ONLY."""
    global _configured
    with _lock:
        _configured = False
    logger = logging.getLogger(_LOGGER_PREFIX)
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
    logger.propagate = True
