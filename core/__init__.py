# ============================================================================
# CORE MODULE
# ============================================================================
# STATUS: Core module initialization
# PURPOSE: Export envelope models and the error taxonomy
# CREATED: 12 OCT 2026
# ============================================================================

from core.errors import (
    DispatchError,
    ConfigurationError,
    DuplicateRegistrationError,
    InvalidProxyMappingError,
    RegistryFrozenError,
    HandlerNotFoundError,
    EnvelopeDecodeError,
    HandlerExecutionError,
    TransportError,
    DoubleResolutionError,
)
from core.models import DispatchOptions, JobEnvelope, RetryPolicy

__all__ = [
    # Errors
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
    # Models
    "DispatchOptions",
    "JobEnvelope",
    "RetryPolicy",
]
