# ============================================================================
# DISPATCH ERRORS
# ============================================================================
# STATUS: Foundation - Error taxonomy
# PURPOSE: Exceptions shared by producer, transport and consumer
# CREATED: 12 OCT 2026
# EXPORTS: DispatchError and subclasses
# ============================================================================
"""
Dispatch Errors

Error taxonomy:
- Configuration errors (fatal at start-up):
    ConfigurationError, DuplicateRegistrationError,
    InvalidProxyMappingError, RegistryFrozenError
- Per-message errors (routed to dead-letter):
    HandlerNotFoundError, EnvelopeDecodeError
- Handler errors (routed through the retry policy):
    HandlerExecutionError
- Infrastructure errors (retried at the transport, fatal past a ceiling):
    TransportError
- Programmer errors (abort the worker):
    DoubleResolutionError
"""

from typing import Optional


class DispatchError(Exception):
    """Base exception for the dispatch layer."""
    pass


# ============================================================================
# CONFIGURATION
# ============================================================================

class ConfigurationError(DispatchError):
    """Invalid settings or registration. Aborts process start."""
    pass


class DuplicateRegistrationError(ConfigurationError):
    """Raised when a handler name is already registered in this process."""
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Handler already registered: {name}")


class InvalidProxyMappingError(ConfigurationError):
    """Raised when a proxy name does not derive a usable handler name."""
    def __init__(self, proxy_name: str, target_name: Optional[str], reason: str):
        self.proxy_name = proxy_name
        self.target_name = target_name
        self.reason = reason
        super().__init__(
            f"Invalid proxy mapping {proxy_name!r} -> {target_name!r}: {reason}"
        )


class RegistryFrozenError(ConfigurationError):
    """Raised when registering after the start-up barrier."""
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Registry is frozen, cannot register: {name}")


# ============================================================================
# PER-MESSAGE
# ============================================================================

class HandlerNotFoundError(DispatchError):
    """Raised when a handler name has no registry entry."""
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Handler not found: {name}")


class EnvelopeDecodeError(DispatchError):
    """Raised when a message body is not a valid job envelope."""
    def __init__(self, message: str, body: Optional[str] = None):
        self.body = body
        super().__init__(message)


class HandlerExecutionError(DispatchError):
    """Wraps a failure raised or returned by a handler."""
    def __init__(
        self,
        handler_name: str,
        message: str,
        cause: Optional[BaseException] = None,
    ):
        self.handler_name = handler_name
        self.cause = cause
        super().__init__(f"Handler {handler_name} failed: {message}")

    @property
    def error_class(self) -> str:
        """Name of the underlying exception type."""
        if self.cause is not None:
            return type(self.cause).__name__
        return type(self).__name__


# ============================================================================
# INFRASTRUCTURE
# ============================================================================

class TransportError(DispatchError):
    """Broker unreachable or write/read failure."""
    def __init__(self, message: str, transient: bool = True):
        self.transient = transient
        super().__init__(message)


class DoubleResolutionError(DispatchError):
    """A delivery handle was resolved more than once."""
    def __init__(self, delivery_id: str, first: str, second: str):
        self.delivery_id = delivery_id
        self.first = first
        self.second = second
        super().__init__(
            f"Delivery {delivery_id} already resolved with {first}, "
            f"cannot {second}"
        )


__all__ = [
    "DispatchError",
    "ConfigurationError",
    "DuplicateRegistrationError",
    "InvalidProxyMappingError",
    "RegistryFrozenError",
    "HandlerNotFoundError",
    "EnvelopeDecodeError",
    "HandlerExecutionError",
    "TransportError",
    "DoubleResolutionError",
]
