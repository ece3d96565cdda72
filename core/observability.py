# ============================================================================
# OBSERVABILITY
# ============================================================================
# STATUS: Core - Failure reporting
# PURPOSE: Hand dead-lettered work to an operator-facing sink
# CREATED: 14 OCT 2026
# ============================================================================
"""
Observability

Jobs that end up rejected are reported to an ObservabilitySink with the
full envelope (or raw body when it could not be decoded) so they can be
inspected and replayed by hand.

Events:
- contract_violation: body is not a valid envelope
- handler_missing: no executable handler for the envelope's name
- retries_exhausted: handler failed and its retry policy is spent

Usage:
    from core.observability import LoggingSink, RecentFailures, CompositeSink

    sink = CompositeSink([LoggingSink(), RecentFailures(limit=50)])
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional

from core.models.envelope import JobEnvelope

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    CONTRACT_VIOLATION = "contract_violation"
    HANDLER_MISSING = "handler_missing"
    RETRIES_EXHAUSTED = "retries_exhausted"


@dataclass(frozen=True)
class FailureEvent:
    """A job that was rejected, with everything needed to replay it."""
    kind: FailureKind
    queue: str
    reason: str
    envelope: Optional[JobEnvelope] = None
    body: Optional[str] = None
    worker_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def handler_name(self) -> Optional[str]:
        return self.envelope.handler_name if self.envelope is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "queue": self.queue,
            "reason": self.reason,
            "handler": self.handler_name,
            "envelope": self.envelope.to_dict() if self.envelope is not None else None,
            "body": self.body if self.envelope is None else None,
            "worker_id": self.worker_id,
            "occurred_at": self.occurred_at.isoformat(),
        }


class ObservabilitySink(ABC):
    """Receives rejected jobs."""

    @abstractmethod
    def record(self, event: FailureEvent) -> None:
        ...

    def contract_violation(self, queue: str, body: str, reason: str, **kwargs: Any) -> None:
        self.record(FailureEvent(FailureKind.CONTRACT_VIOLATION, queue, reason, body=body, **kwargs))

    def handler_missing(self, queue: str, envelope: JobEnvelope, reason: str, **kwargs: Any) -> None:
        self.record(FailureEvent(FailureKind.HANDLER_MISSING, queue, reason, envelope=envelope, **kwargs))

    def retries_exhausted(self, queue: str, envelope: JobEnvelope, reason: str, **kwargs: Any) -> None:
        self.record(FailureEvent(FailureKind.RETRIES_EXHAUSTED, queue, reason, envelope=envelope, **kwargs))


class LoggingSink(ObservabilitySink):
    """Logs each failure at ERROR with the full envelope attached."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._logger = log or logger

    def record(self, event: FailureEvent) -> None:
        self._logger.error(
            f"Job rejected ({event.kind.value}) on {event.queue}: {event.reason}",
            extra={"extra": {"failure": event.to_dict()}},
        )


class RecentFailures(ObservabilitySink):
    """Keeps the most recent failures in memory for the health endpoint."""

    def __init__(self, limit: int = 100):
        self._events: Deque[FailureEvent] = deque(maxlen=limit)

    def record(self, event: FailureEvent) -> None:
        self._events.append(event)

    @property
    def events(self) -> List[FailureEvent]:
        return list(self._events)

    def counts(self) -> Dict[str, int]:
        result: Dict[str, int] = {}
        for event in self._events:
            result[event.kind.value] = result.get(event.kind.value, 0) + 1
        return result

    def __len__(self) -> int:
        return len(self._events)


class CompositeSink(ObservabilitySink):
    """Fans events out to several sinks; one failing sink does not block the rest."""

    def __init__(self, sinks: Iterable[ObservabilitySink]):
        self.sinks = list(sinks)

    def record(self, event: FailureEvent) -> None:
        for sink in self.sinks:
            try:
                sink.record(event)
            except Exception:
                logger.exception(f"Observability sink {type(sink).__name__} failed")


__all__ = [
    "FailureKind",
    "FailureEvent",
    "ObservabilitySink",
    "LoggingSink",
    "RecentFailures",
    "CompositeSink",
]
