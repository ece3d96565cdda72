# ============================================================================
# MODELS MODULE
# ============================================================================
# STATUS: Model exports
# PURPOSE: Central export point for wire models
# CREATED: 12 OCT 2026
# ============================================================================
"""
Models Module - Central Export Point

Pydantic models that cross the broker boundary.
"""

from core.models.envelope import (
    DEFAULT_MAX_ATTEMPTS,
    DispatchOptions,
    JobEnvelope,
    RetryPolicy,
)

__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "DispatchOptions",
    "JobEnvelope",
    "RetryPolicy",
]
