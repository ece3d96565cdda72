# ============================================================================
# CONFIGURATION MODULE
# ============================================================================
# STATUS: Core - Configuration
# PURPOSE: Settings profiles and broker addressing
# CREATED: 12 OCT 2026
# ============================================================================
"""
Configuration Module

Provides the immutable Settings object and broker URL parsing.
"""

from core.config.broker_url import BrokerURL
from core.config.settings import (
    DEFAULT_QUEUE,
    Environment,
    PROFILES,
    Settings,
)

__all__ = [
    "BrokerURL",
    "DEFAULT_QUEUE",
    "Environment",
    "PROFILES",
    "Settings",
]
