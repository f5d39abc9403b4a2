"""
SHIELDCORE Observability

Structured logging with correlation IDs for the sync, account and builder
layers. Every sync run and every transaction build gets its own correlation
ID so the log lines of one operation can be grouped after the fact.

    log = ShieldLogger("sync", ShieldLayer.INDEXER)
    with correlation_scope("sync"):
        log.info("Applied window", height=812, leaves=12)

    {"timestamp": "...", "level": "info", "logger": "shieldcore.indexer.sync",
     "message": "Applied window", "correlation_id": "sync-4f1c09ab12de",
     "layer": "indexer", "context": {"height": 812, "leaves": 12}}

Level and output format come from the ``logging`` config section: JSON lines
through ``StructuredHandler`` or plain text through a stdlib ``Formatter``.
Keyword arguments to the log methods become the event's ``context``.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

T = TypeVar("T")

_correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar("shieldcore_correlation_id", default="")

_HANDLER_MARK = "_shieldcore_handler"


class ShieldLayer(Enum):
    """SHIELDCORE components, used to categorize log events."""
    PRIMITIVES = "primitives"
    MERKLE = "merkle"
    CODEC = "codec"
    INDEXER = "indexer"
    ACCOUNT = "account"
    BUILDER = "builder"
    PROVER = "prover"
    STORE = "store"


# =============================================================================
# CORRELATION IDS
# =============================================================================

def new_correlation_id(prefix: str = "corr") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def get_correlation_id() -> str:
    """Correlation ID of the current context, creating one if unset."""
    current = _correlation_id.get()
    if not current:
        current = new_correlation_id()
        _correlation_id.set(current)
    return current


@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
    """Run a block under a fresh correlation ID, restoring the outer one after."""
    correlation_id = new_correlation_id(prefix)
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


# =============================================================================
# JSON OUTPUT
# =============================================================================

@dataclass
class StructuredEvent:
    """One JSON log line. Empty fields are omitted from the output."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    @classmethod
    def from_record(cls, record: logging.LogRecord) -> "StructuredEvent":
        event = cls(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            level=record.levelname.lower(),
            logger=record.name,
            message=record.getMessage(),
            correlation_id=_correlation_id.get(),
            layer=getattr(record, "layer", ""),
            operation=getattr(record, "operation", ""),
            duration_ms=getattr(record, "duration_ms", None),
            error_code=getattr(record, "error_code", ""),
            context=getattr(record, "context", {}),
        )
        if record.exc_info:
            event.exception = "".join(traceback.format_exception(*record.exc_info))
        return event

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v not in (None, "", {})}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Writes each record as one JSON line."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.stream.write(StructuredEvent.from_record(record).to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


def _default_handler() -> logging.Handler:
    from shieldcore.config import get_config

    if get_config().logging.log_format.get() == "text":
        handler: logging.Handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    else:
        handler = StructuredHandler()
    setattr(handler, _HANDLER_MARK, True)
    return handler


# =============================================================================
# LOGGER
# =============================================================================

class ShieldLogger:
    """
    Component logger named ``shieldcore.<layer>.<name>``.

    The level is read from config when the logger is created. One default
    handler is attached per underlying logger however many wrappers exist.
    """

    def __init__(self, name: str, layer: ShieldLayer, level: Optional[str] = None):
        from shieldcore.config import get_config

        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"shieldcore.{layer.value}.{name}")
        level_name = (level or get_config().logging.log_level.get()).upper()
        self._logger.setLevel(logging.getLevelName(level_name))
        if not any(getattr(h, _HANDLER_MARK, False) for h in self._logger.handlers):
            self._logger.addHandler(_default_handler())

    def _emit(
        self,
        level: int,
        message: str,
        *,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._emit(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._emit(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._emit(logging.WARNING, message, **context)

    def error(self, message: str, error_code: str = "", exc_info: bool = False, **context: Any) -> None:
        self._emit(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def critical(self, message: str, error_code: str = "", exc_info: bool = False, **context: Any) -> None:
        """Fatal conditions: divergence from chain state, halted accounts."""
        self._emit(logging.CRITICAL, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(self, name: str, duration_ms: float, success: bool = True, **context: Any) -> None:
        self._emit(
            logging.INFO if success else logging.WARNING,
            f"{name} {'completed' if success else 'failed'}",
            operation=name,
            duration_ms=round(duration_ms, 3),
            **context,
        )


def timed_operation(logger: ShieldLogger, operation_name: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator logging the duration and outcome of each call."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            started = time.monotonic()
            ok = False
            try:
                result = func(*args, **kwargs)
                ok = True
                return result
            finally:
                logger.operation(operation_name, (time.monotonic() - started) * 1000, ok)
        return wrapper
    return decorator
