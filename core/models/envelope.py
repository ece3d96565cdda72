# ============================================================================
# JOB ENVELOPE MODEL
# ============================================================================
# STATUS: Core model - Broker payload for dispatched jobs
# PURPOSE: Pydantic model for the job envelope and its retry policy
# CREATED: 12 OCT 2026
# EXPORTS: JobEnvelope, RetryPolicy, DispatchOptions
# DEPENDENCIES: pydantic
# ============================================================================
"""
Job Envelope Model

The envelope is the serializable unit of work that crosses the broker.
Producer and consumer share only this contract, never code.

Wire format (JSON):
{
    "class": "EmailWorker",
    "queue": "email",
    "retry": false,              # false | true | <max attempts>
    "args": ["a@example.org", "Hi"],
    "attempt": 0,
    "jid": "5f0c1c0e9d3b4c5f8a1e2b3c",
    "enqueued_at": "2026-10-12T09:30:00Z"
}

Retried envelopes additionally carry error_class, error_message and
failed_at describing the previous failure.

Key Design:
- Frozen once built: changes produce copies (model_copy)
- "handlerName" and "handler_name" are accepted on input, "class" is written
- Explicit serialization via to_wire() / from_wire()
"""

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Tuple, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
)

from core.errors import EnvelopeDecodeError, HandlerExecutionError


# Attempts allowed when a handler declares retry=True without a count
DEFAULT_MAX_ATTEMPTS = 25


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_jid() -> str:
    return uuid.uuid4().hex[:24]


# ============================================================================
# RETRY POLICY
# ============================================================================

class RetryPolicy(BaseModel):
    """
    Producer-declared retry policy.

    On the wire this is a bool or an int:
        False -> retries disabled
        True  -> retries enabled, consumer default for max attempts
        N > 0 -> retries enabled, at most N attempts in total
        0     -> retries disabled
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enabled: bool = True
    max_attempts: Optional[int] = Field(
        default=None,
        ge=1,
        validation_alias=AliasChoices("max_attempts", "maxAttempts"),
    )

    @classmethod
    def coerce(cls, value: Any) -> "RetryPolicy":
        """Build a policy from its wire form, a dict, or a policy."""
        if isinstance(value, RetryPolicy):
            return value
        # bool before int: bool is an int subclass
        if isinstance(value, bool):
            return cls(enabled=value)
        if isinstance(value, int):
            if value < 0:
                raise ValueError(f"retry must be >= 0, got {value}")
            if value == 0:
                return cls(enabled=False)
            return cls(enabled=True, max_attempts=value)
        if isinstance(value, dict):
            return cls.model_validate(value)
        raise ValueError(f"retry must be a bool, an int or a policy, got {value!r}")

    def to_wire(self) -> Union[bool, int]:
        if not self.enabled:
            return False
        if self.max_attempts is None:
            return True
        return self.max_attempts

    def effective_max_attempts(self, default: int = DEFAULT_MAX_ATTEMPTS) -> int:
        """Total attempts allowed, including the first one."""
        if not self.enabled:
            return 1
        return self.max_attempts if self.max_attempts is not None else default

    def allows_retry(self, attempt: int, default: int = DEFAULT_MAX_ATTEMPTS) -> bool:
        """
        Whether a failure at `attempt` (0-based) may be requeued.

        With max_attempts=N the handler runs for attempts 0..N-1.
        """
        return self.enabled and attempt + 1 < self.effective_max_attempts(default)


# ============================================================================
# DISPATCH OPTIONS
# ============================================================================

@dataclass(frozen=True)
class DispatchOptions:
    """
    Per-handler defaults or per-call overrides.

    A None key means "not specified" and never overrides a default.
    """
    queue: Optional[str] = None
    retry: Optional[RetryPolicy] = None

    @classmethod
    def build(
        cls,
        queue: Optional[str] = None,
        retry: Union[None, bool, int, RetryPolicy, dict] = None,
    ) -> "DispatchOptions":
        return cls(
            queue=queue,
            retry=RetryPolicy.coerce(retry) if retry is not None else None,
        )

    def merged(self, overrides: "DispatchOptions") -> "DispatchOptions":
        """Merge per key; override keys win where they are set."""
        return DispatchOptions(
            queue=overrides.queue if overrides.queue is not None else self.queue,
            retry=overrides.retry if overrides.retry is not None else self.retry,
        )


# ============================================================================
# ENVELOPE
# ============================================================================

class JobEnvelope(BaseModel):
    """
    Message body for every dispatched job.

    Lifecycle:
        1. Producer builds the envelope from registry defaults + call options
        2. Dispatch middleware may rewrite it (e.g. proxy rename)
        3. Transport publishes to_wire() to envelope.queue
        4. Consumer decodes with from_wire() and resolves handler_name
        5. On retry the consumer publishes a copy with attempt + 1
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    handler_name: str = Field(
        ...,
        min_length=1,
        max_length=256,
        validation_alias=AliasChoices("class", "handlerName", "handler_name"),
        serialization_alias="class",
        description="Logical handler name resolved by the consumer",
    )
    queue: str = Field(
        ...,
        min_length=1,
        max_length=260,
        description="Target queue",
    )
    args: Tuple[Any, ...] = Field(
        default=(),
        description="Positional, JSON-compatible handler arguments",
    )
    retry: RetryPolicy = Field(
        default_factory=RetryPolicy,
        description="Retry policy declared by the producer",
    )
    attempt: int = Field(
        default=0,
        ge=0,
        description="0-based delivery attempt, incremented on requeue",
    )

    # Tracking
    jid: str = Field(
        default_factory=_new_jid,
        min_length=1,
        max_length=64,
        description="Job id, stable across retries",
    )
    enqueued_at: datetime = Field(
        default_factory=_utcnow,
        description="When the producer built the envelope",
    )

    # Last failure (set on requeued copies)
    error_class: Optional[str] = Field(default=None, max_length=256)
    error_message: Optional[str] = Field(default=None, max_length=2000)
    failed_at: Optional[datetime] = None

    @field_validator("handler_name")
    @classmethod
    def _handler_name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("handler name must not be blank")
        return value

    @field_validator("args", mode="before")
    @classmethod
    def _args_json_compatible(cls, value: Any) -> Any:
        if not isinstance(value, (list, tuple)):
            raise ValueError("args must be an ordered sequence")
        try:
            json.dumps(list(value))
        except (TypeError, ValueError) as e:
            raise ValueError(f"args must be JSON-compatible: {e}")
        return tuple(value)

    @field_validator("retry", mode="before")
    @classmethod
    def _coerce_retry(cls, value: Any) -> RetryPolicy:
        return RetryPolicy.coerce(value)

    @field_serializer("retry")
    def _serialize_retry(self, retry: RetryPolicy) -> Union[bool, int]:
        return retry.to_wire()

    @field_serializer("args")
    def _serialize_args(self, args: Tuple[Any, ...]) -> list:
        return list(args)

    # =========================================================================
    # COPIES
    # =========================================================================

    def renamed(self, handler_name: str) -> "JobEnvelope":
        """Copy with a different handler name."""
        return self.model_copy(update={"handler_name": handler_name})

    def next_attempt(self, error: HandlerExecutionError) -> "JobEnvelope":
        """Copy for redelivery after `error`, with attempt + 1."""
        return self.model_copy(
            update={
                "attempt": self.attempt + 1,
                "error_class": error.error_class,
                "error_message": str(error)[:2000],
                "failed_at": _utcnow(),
            }
        )

    # =========================================================================
    # SERIALIZATION
    # =========================================================================

    def to_dict(self) -> dict:
        """JSON-compatible dict in wire format."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_wire(self) -> str:
        """Serialize to the broker message body."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_wire(cls, body: Union[str, bytes]) -> "JobEnvelope":
        """
        Deserialize a broker message body.

        Raises:
            EnvelopeDecodeError: If the body is not JSON or misses fields
        """
        try:
            return cls.model_validate_json(body)
        except ValidationError as e:
            text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
            raise EnvelopeDecodeError(
                f"Invalid job envelope: {e.error_count()} error(s): "
                f"{e.errors()[0]['msg']}",
                body=text,
            ) from e


__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "RetryPolicy",
    "DispatchOptions",
    "JobEnvelope",
]
