# ============================================================================
# WORKER MODULE
# ============================================================================
# STATUS: Core - Consumer-side components
# PURPOSE: Handler execution, delivery state machine, process entry point
# CREATED: 14 OCT 2026
# ============================================================================
"""
Worker Module

Components for consuming jobs:
- executor: Runs one handler inside its job context
- runtime: Worker pool, delivery state machine and graceful shutdown
- main: Worker process entry point with health probes
"""

from worker.executor import (
    ExecutionOutcome,
    HandlerExecutor,
)
from worker.runtime import (
    ConsumerRuntime,
    DeliveryRecord,
    DeliveryState,
    RuntimeStats,
    RuntimeStatus,
    install_signal_handlers,
)

__all__ = [
    # Executor
    "ExecutionOutcome",
    "HandlerExecutor",
    # Runtime
    "ConsumerRuntime",
    "DeliveryRecord",
    "DeliveryState",
    "RuntimeStats",
    "RuntimeStatus",
    "install_signal_handlers",
]
