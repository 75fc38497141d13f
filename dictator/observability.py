"""
Dictator Observability

Structured logging and the operator channel for the migration sequencer.
Every log line is a single JSON object carrying the run correlation ID,
the emitting layer, and whatever structured context the caller attached
(step index, resource, expected vs actual).

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │           Sequencer / Handover / Verifier               │
    │  logger.info("msg", step=i)   channel.instruct(...)     │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │             DictatorLogger / OperatorChannel             │
    │     run correlation IDs, structured context              │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                  StructuredHandler                       │
    │              one JSON event per line                     │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

# Context variables for run-scoped data
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)
step_var: contextvars.ContextVar[Optional[int]] = contextvars.ContextVar(
    "step", default=None
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SequencerLayer(Enum):
    """Components that emit log events."""
    POLLER = "poller"
    HANDOVER = "handover"
    VERIFIER = "verifier"
    SEQUENCER = "sequencer"
    SIMULATOR = "simulator"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    step: Optional[int] = None
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def to_text(self) -> str:
        """Single human-readable line."""
        where = f" step={self.step}" if self.step is not None else ""
        extras = " ".join(f"{k}={v}" for k, v in self.context.items())
        line = f"{self.timestamp} {self.level.upper():7} [{self.layer}]{where} {self.message}"
        if extras:
            line += f" ({extras})"
        if self.exception:
            line += "\n" + self.exception.rstrip()
        return line


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None, fmt: str = "json"):
        super().__init__()
        self.stream = stream or sys.stderr
        self.fmt = fmt

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                step=step_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write((event.to_text() if self.fmt == "text" else event.to_json()) + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class DictatorLogger:
    """
    Structured logger for sequencer components.

    Automatically includes the run correlation ID, the step under
    consideration, and the layer in all log events.
    """

    def __init__(
        self,
        name: str,
        layer: SequencerLayer,
        level: LogLevel = LogLevel.INFO,
    ):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"dictator.{layer.value}.{name}")
        self._logger.setLevel(getattr(logging, level.value.upper()))

        if not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(StructuredHandler())

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id() -> str:
    """Generate a new run correlation ID."""
    return f"run-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_logger(name: str, layer: SequencerLayer) -> DictatorLogger:
    """Get a logger for a sequencer component."""
    return DictatorLogger(name, layer)


def configure_logging(level: str = "info", stream: Any = None, fmt: Optional[str] = None) -> None:
    """Set the level of every dictator logger and optionally redirect output."""
    root = logging.getLogger("dictator")
    root.setLevel(getattr(logging, level.upper()))
    for name, logger in logging.root.manager.loggerDict.items():
        if not name.startswith("dictator.") or not isinstance(logger, logging.Logger):
            continue
        logger.setLevel(getattr(logging, level.upper()))
        for handler in logger.handlers:
            if not isinstance(handler, StructuredHandler):
                continue
            if stream is not None:
                handler.stream = stream
            if fmt is not None:
                handler.fmt = fmt


T = TypeVar("T")


def timed_operation(
    logger: DictatorLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator


# =============================================================================
# OPERATOR CHANNEL
# =============================================================================

@dataclass
class OperatorInstruction:
    """A human-readable instruction for an external operator."""
    message: str
    resource: str = ""
    operation: str = ""
    step: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    correlation_id: str = field(default_factory=lambda: correlation_id_var.get())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class OperatorChannel:
    """
    Advisory channel to the human operator.

    Instructions are recorded in order, logged at WARNING level and
    forwarded to any registered listeners. Nothing sent here is
    transactional; the sequencer keeps polling remote state regardless.
    """

    def __init__(self, logger: Optional[DictatorLogger] = None):
        self._logger = logger or get_logger("operator", SequencerLayer.SEQUENCER)
        self._instructions: List[OperatorInstruction] = []
        self._listeners: List[Callable[[OperatorInstruction], None]] = []
        self._lock = threading.Lock()

    @property
    def instructions(self) -> List[OperatorInstruction]:
        with self._lock:
            return list(self._instructions)

    def subscribe(self, listener: Callable[[OperatorInstruction], None]) -> None:
        """Register a listener invoked for every instruction."""
        self._listeners.append(listener)

    def instruct(
        self,
        message: str,
        resource: str = "",
        operation: str = "",
        step: Optional[int] = None,
        **details: Any,
    ) -> OperatorInstruction:
        """Emit an instruction for an external operator."""
        instruction = OperatorInstruction(
            message=message,
            resource=resource,
            operation=operation,
            step=step,
            details=details,
        )
        with self._lock:
            self._instructions.append(instruction)

        self._logger.warning(
            message,
            operation="operator_instruction",
            resource=resource,
            requested_operation=operation,
            **details,
        )

        for listener in self._listeners:
            listener(instruction)

        return instruction

