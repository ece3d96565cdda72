# ============================================================================
# MESSAGING MODULE
# ============================================================================
# STATUS: Core - Producer API
# PURPOSE: Dispatch jobs to worker queues
# CREATED: 14 OCT 2026
# ============================================================================
"""
Messaging module.

Provides the Dispatcher used by producers to publish job envelopes.
"""

from .dispatcher import Dispatcher

__all__ = [
    "Dispatcher",
]
