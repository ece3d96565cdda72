# ============================================================================
# HANDLER REGISTRY
# ============================================================================
# STATUS: Core - Handler registration and lookup
# PURPOSE: Map logical handler names to dispatch defaults and executors
# CREATED: 12 OCT 2026
# ============================================================================
"""
Handler Registry

Process-local mapping from a logical handler name to its dispatch defaults
and, on the consumer side, the function that executes it.

Design:
- Entries are written once at start-up, atomically per name
- Fail-fast on duplicate registration
- freeze() is the start-up barrier; lookups after it need no locking
- Producer-only entries (no execute function) are allowed; a producer
  never needs the consumer's code
- Supports both sync and async handlers, invoked as handler(*args)
"""

import inspect
import re
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from core.errors import (
    ConfigurationError,
    DuplicateRegistrationError,
    HandlerNotFoundError,
    InvalidProxyMappingError,
    RegistryFrozenError,
)
from core.logging import get_logger, ComponentType
from core.models.envelope import DispatchOptions, JobEnvelope, RetryPolicy

if TYPE_CHECKING:
    from handlers.proxy import DispatchMiddleware

logger = get_logger(__name__, ComponentType.REGISTRY)

# Identifier segments joined by "." or "::" (e.g. "Mailers::EmailWorker")
HANDLER_NAME_PATTERN = re.compile(
    r"^[A-Za-z_][A-Za-z0-9_]*(?:(?:::|\.)[A-Za-z_][A-Za-z0-9_]*)*$"
)


def is_valid_handler_name(name: Optional[str]) -> bool:
    return bool(name) and HANDLER_NAME_PATTERN.match(name) is not None


# ============================================================================
# HANDLER TYPES
# ============================================================================

# Called as handler(*envelope.args); may be sync or async
HandlerFunc = Callable[..., Any]


@dataclass
class HandlerResult:
    """
    Optional explicit result for handlers.

    Returning normally (any value) counts as success; returning
    failure_result() counts as failure without raising.
    """
    success: bool = True
    output: Any = None
    error_message: Optional[str] = None

    @classmethod
    def success_result(cls, output: Any = None) -> "HandlerResult":
        """Create a success result."""
        return cls(success=True, output=output)

    @classmethod
    def failure_result(cls, error_message: str, output: Any = None) -> "HandlerResult":
        """Create a failure result."""
        return cls(success=False, error_message=error_message, output=output)


@dataclass(frozen=True)
class JobContext:
    """
    Execution context visible to a running handler via current_job().

    Long-running handlers should poll shutdown_requested at safe points
    and return early (or raise) so the job can be redelivered.
    """
    envelope: JobEnvelope
    worker_id: Optional[str] = None
    shutdown: threading.Event = field(default_factory=threading.Event)

    @property
    def jid(self) -> str:
        return self.envelope.jid

    @property
    def attempt(self) -> int:
        return self.envelope.attempt

    @property
    def shutdown_requested(self) -> bool:
        return self.shutdown.is_set()


_current_job: ContextVar[Optional[JobContext]] = ContextVar("current_job", default=None)


def current_job() -> Optional[JobContext]:
    """Context of the job executing in this task/thread, if any."""
    return _current_job.get()


@contextmanager
def job_scope(context: JobContext) -> Iterator[JobContext]:
    """Bind `context` as the current job for the enclosed block."""
    token = _current_job.set(context)
    try:
        yield context
    finally:
        _current_job.reset(token)


# ============================================================================
# REGISTRY ENTRY
# ============================================================================

@dataclass(frozen=True)
class RegistryEntry:
    """
    One registered handler name.

    target_name is the name written into envelopes; it differs from name
    only for proxy entries.
    """
    name: str
    defaults: DispatchOptions = field(default_factory=DispatchOptions)
    execute: Optional[HandlerFunc] = None
    target_name: str = ""
    middleware: Tuple["DispatchMiddleware", ...] = ()
    description: str = ""
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not self.target_name:
            object.__setattr__(self, "target_name", self.name)
        object.__setattr__(self, "middleware", tuple(self.middleware))

    @property
    def is_proxy(self) -> bool:
        return self.target_name != self.name

    @property
    def can_execute(self) -> bool:
        return self.execute is not None

    @property
    def is_async(self) -> bool:
        return self.execute is not None and inspect.iscoroutinefunction(self.execute)

    def metadata(self) -> Dict[str, Any]:
        retry = self.defaults.retry.to_wire() if self.defaults.retry is not None else None
        return {
            "name": self.name,
            "target_name": self.target_name,
            "is_proxy": self.is_proxy,
            "queue": self.defaults.queue,
            "retry": retry,
            "description": self.description,
            "can_execute": self.can_execute,
            "is_async": self.is_async,
            "function": getattr(self.execute, "__qualname__", None),
            "module": getattr(self.execute, "__module__", None),
            "middleware": [type(m).__name__ for m in self.middleware],
            "registered_at": self.registered_at.isoformat(),
        }


# ============================================================================
# REGISTRY
# ============================================================================

class HandlerRegistry:
    """
    Registry of handler names for one process.

    Usage:
        registry = HandlerRegistry()
        registry.register("send_receipt", DispatchOptions.build(queue="mail"), send_receipt)
        registry.freeze()

        entry = registry.lookup("send_receipt")
    """

    def __init__(self, name: str = "default"):
        self.name = name
        self._entries: Dict[str, RegistryEntry] = {}
        self._lock = threading.Lock()
        self._frozen = False

    # -------------------------------------------------------------------------
    # Registration (start-up only)
    # -------------------------------------------------------------------------

    def register(
        self,
        name: str,
        defaults: Optional[DispatchOptions] = None,
        execute: Optional[HandlerFunc] = None,
        *,
        description: str = "",
    ) -> RegistryEntry:
        """
        Register a handler name.

        Args:
            name: Logical handler name (unique per process)
            defaults: Default queue / retry policy for dispatches
            execute: Function run by the consumer (omit on producers)
            description: Human-readable description

        Raises:
            DuplicateRegistrationError: If name is already registered
            InvalidProxyMappingError: If name is the target of a proxy
            RegistryFrozenError: If called after freeze()
            ConfigurationError: If name is not a valid handler name
        """
        if not is_valid_handler_name(name):
            raise ConfigurationError(f"Invalid handler name: {name!r}")
        if execute is not None and not callable(execute):
            raise ConfigurationError(f"Handler {name} execute is not callable")

        entry = RegistryEntry(
            name=name,
            defaults=defaults or DispatchOptions(),
            execute=execute,
            description=description,
        )
        return self.add(entry)

    def add(self, entry: RegistryEntry) -> RegistryEntry:
        """Insert a fully built entry; all-or-nothing per name."""
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(entry.name)
            if entry.name in self._entries:
                raise DuplicateRegistrationError(entry.name)

            if entry.is_proxy:
                existing = self._entries.get(entry.target_name)
                if existing is not None and not existing.is_proxy:
                    raise InvalidProxyMappingError(
                        entry.name,
                        entry.target_name,
                        "collides with a registered handler",
                    )
            else:
                for other in self._entries.values():
                    if other.is_proxy and other.target_name == entry.name:
                        raise InvalidProxyMappingError(
                            other.name,
                            other.target_name,
                            "collides with a registered handler",
                        )

            self._entries[entry.name] = entry

        logger.debug(
            f"Registered handler: {entry.name}"
            + (f" -> {entry.target_name}" if entry.is_proxy else ""),
            extra={"registry": self.name},
        )
        return entry

    def freeze(self) -> None:
        """Start-up barrier. The registry is read-only afterwards."""
        with self._lock:
            self._frozen = True
        logger.info(
            f"Registry {self.name} frozen with {len(self._entries)} handlers: "
            f"{sorted(self._entries)}"
        )

    @property
    def frozen(self) -> bool:
        return self._frozen

    def clear(self) -> None:
        """
        Remove all entries and unfreeze.

        Primarily for testing.
        """
        with self._lock:
            self._entries.clear()
            self._frozen = False
        logger.debug(f"Cleared registry {self.name}")

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def lookup(self, name: str) -> RegistryEntry:
        """
        Get an entry by name.

        Raises:
            HandlerNotFoundError: If name is not registered
        """
        entry = self._entries.get(name)
        if entry is None:
            raise HandlerNotFoundError(name)
        return entry

    def get(self, name: str) -> Optional[RegistryEntry]:
        return self._entries.get(name)

    def names(self) -> List[str]:
        return sorted(self._entries)

    def list_handlers(self) -> List[Dict[str, Any]]:
        """All entries as metadata dicts."""
        return [self._entries[name].metadata() for name in self.names()]

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# ============================================================================
# DEFAULT REGISTRY + DECORATOR
# ============================================================================

default_registry = HandlerRegistry()


def register_handler(
    name: str,
    *,
    queue: Optional[str] = None,
    retry: Union[None, bool, int, RetryPolicy] = None,
    description: str = "",
    registry: Optional[HandlerRegistry] = None,
) -> Callable[[HandlerFunc], HandlerFunc]:
    """
    Decorator to register a consumer handler.

    Args:
        name: Handler name (must be unique)
        queue: Default queue for dispatches of this handler
        retry: Default retry policy (bool, max attempts, or RetryPolicy)
        description: Human-readable description
        registry: Target registry (defaults to default_registry)

    Example:
        @register_handler("EmailWorker", queue="email", retry=5)
        async def send_email(address: str, subject: str) -> None:
            ...
    """
    def decorator(func: HandlerFunc) -> HandlerFunc:
        (registry or default_registry).register(
            name,
            DispatchOptions.build(queue=queue, retry=retry),
            func,
            description=description,
        )
        return func

    return decorator


__all__ = [
    "HANDLER_NAME_PATTERN",
    "is_valid_handler_name",
    "HandlerFunc",
    "HandlerResult",
    "JobContext",
    "current_job",
    "job_scope",
    "RegistryEntry",
    "HandlerRegistry",
    "default_registry",
    "register_handler",
]
