# ============================================================================
# STRUCTURED LOGGING
# ============================================================================
# STATUS: Core - Structured logging with context
# PURPOSE: Consistent, queryable logging across producer and worker
# CREATED: 12 OCT 2026
# ============================================================================
"""
Structured Logging

Provides structured, JSON-formatted logging for producers and workers.

Features:
- Component-based loggers
- Contextual fields (jid, handler, queue, attempt, worker_id)
- Context stored in a ContextVar, so each asyncio task sees its own job
- JSON output for log aggregation, human output for development
- Named checkpoints for delivery lifecycle events

Usage:
    from core.logging import get_logger, log_context

    logger = get_logger("worker.runtime")

    with log_context(jid="4c1f...", handler="EmailWorker"):
        logger.info("Executing job", extra={"args_count": 2})
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Union


class ComponentType(str, Enum):
    """Component types for logging categorization."""
    PRODUCER = "producer"
    WORKER = "worker"
    REGISTRY = "registry"
    TRANSPORT = "transport"
    HANDLER = "handler"


@dataclass(frozen=True)
class LogContext:
    """
    Context for structured logging.

    Immutable; nested log_context() calls push merged copies.
    """
    jid: Optional[str] = None
    handler: Optional[str] = None
    queue: Optional[str] = None
    attempt: Optional[int] = None
    worker_id: Optional[str] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict, excluding None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is not None and key != "extra":
                result[key] = value
        if self.extra:
            result.update(self.extra)
        return result


_current_context: ContextVar[LogContext] = ContextVar(
    "dispatch_log_context", default=LogContext()
)


def get_current_context() -> LogContext:
    """Get current logging context."""
    return _current_context.get()


@contextmanager
def log_context(**kwargs: Any) -> Iterator[LogContext]:
    """
    Context manager for adding logging context.

    Args:
        **kwargs: Context fields to add

    Example:
        with log_context(jid=envelope.jid, handler=envelope.handler_name):
            logger.info("Processing job")
    """
    parent = get_current_context()
    new_context = LogContext(
        jid=kwargs.get("jid", parent.jid),
        handler=kwargs.get("handler", parent.handler),
        queue=kwargs.get("queue", parent.queue),
        attempt=kwargs.get("attempt", parent.attempt),
        worker_id=kwargs.get("worker_id", parent.worker_id),
        component=kwargs.get("component", parent.component),
        operation=kwargs.get("operation", parent.operation),
        extra={**parent.extra, **kwargs.get("extra", {})},
    )

    token = _current_context.set(new_context)
    try:
        yield new_context
    finally:
        _current_context.reset(token)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON for easy parsing by log aggregators.
    """

    def __init__(
        self,
        include_timestamp: bool = True,
        include_context: bool = True,
        include_source: bool = True,
    ):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_context = include_context
        self.include_source = include_source

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {}

        if self.include_timestamp:
            log_data["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()

        log_data["level"] = record.levelname
        log_data["logger"] = record.name
        log_data["message"] = record.getMessage()

        if self.include_context:
            context_dict = get_current_context().to_dict()
            if context_dict:
                log_data["context"] = context_dict

        if hasattr(record, "extra") and record.extra:
            log_data["data"] = record.extra

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self.include_source:
            log_data["source"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        return json.dumps(log_data, default=str)


class HumanFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Includes job context inline for easy reading.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        level = record.levelname.ljust(8)

        context = get_current_context()
        context_parts = []
        if context.handler:
            context_parts.append(f"handler={context.handler}")
        if context.jid:
            context_parts.append(f"jid={context.jid}")
        if context.attempt is not None:
            context_parts.append(f"attempt={context.attempt}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        extra_str = ""
        if hasattr(record, "extra") and record.extra:
            extra_str = f" {record.extra}"

        result = f"{timestamp} {level} {record.name}{context_str}: {record.getMessage()}{extra_str}"

        if record.exc_info:
            result += f"\n{self.formatException(record.exc_info)}"

        return result


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that includes context in log records.

    Fields passed via extra= are nested under record.extra so formatters
    can tell them apart from LogRecord attributes.
    """

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        if self.extra and self.extra.get("component"):
            extra.setdefault("component", self.extra["component"])
        kwargs["extra"] = {"extra": extra}
        return msg, kwargs


def get_logger(
    name: str,
    component: Optional[ComponentType] = None,
) -> ContextLogger:
    """
    Get a context-aware logger.

    Args:
        name: Logger name (e.g., "worker.runtime")
        component: Optional component type for categorization

    Returns:
        ContextLogger instance
    """
    base_logger = logging.getLogger(name)
    value = component.value if component is not None else None
    return ContextLogger(base_logger, {"component": value})


def configure_logging(
    level: Union[str, int] = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure logging for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Use JSON format (for production)
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    if json_output or os.getenv("LOG_FORMAT", "").lower() == "json":
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = HumanFormatter()

    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # The Service Bus SDK is chatty at INFO
    logging.getLogger("azure").setLevel(max(level, logging.WARNING))
    logging.getLogger("uamqp").setLevel(max(level, logging.WARNING))


# ============================================================================
# CHECKPOINT LOGGING
# ============================================================================

def log_checkpoint(
    name: str,
    data: Optional[Dict[str, Any]] = None,
    logger: Optional[Union[logging.Logger, "ContextLogger"]] = None,
) -> None:
    """
    Log a named checkpoint.

    Checkpoints mark delivery lifecycle events (delivery_acked,
    delivery_requeued, delivery_rejected, ...) so they can be queried.

    Args:
        name: Checkpoint name
        data: Optional checkpoint data
        logger: Optional specific logger to use
    """
    if logger is None:
        logger = logging.getLogger("checkpoint")

    checkpoint_data: Dict[str, Any] = {
        "checkpoint": name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    checkpoint_data.update(get_current_context().to_dict())

    if data:
        checkpoint_data["data"] = data

    if isinstance(logger, ContextLogger):
        # Adapter nests extra= itself
        logger.info(f"CHECKPOINT: {name}", extra=checkpoint_data)
    else:
        logger.info(f"CHECKPOINT: {name}", extra={"extra": checkpoint_data})


__all__ = [
    "ComponentType",
    "LogContext",
    "StructuredFormatter",
    "HumanFormatter",
    "ContextLogger",
    "get_logger",
    "configure_logging",
    "log_context",
    "get_current_context",
    "log_checkpoint",
]
