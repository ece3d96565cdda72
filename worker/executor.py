# ============================================================================
# WORKER EXECUTOR
# ============================================================================
# STATUS: Core - Handler execution engine
# PURPOSE: Run one handler invocation and capture its outcome
# CREATED: 14 OCT 2026
# ============================================================================
"""
Worker Executor

Runs a registry entry's execute function for one envelope:
- Async handlers are awaited on the event loop
- Sync handlers run in a worker thread (asyncio.to_thread)
- The JobContext is bound for the call, so handlers can read current_job()
- Raised exceptions and HandlerResult failures become HandlerExecutionError

Cancellation is not captured: it propagates to the runtime, which owns
shutdown.
"""

import asyncio
import inspect
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

from core.errors import HandlerExecutionError, HandlerNotFoundError
from core.logging import ComponentType, get_logger
from core.models.envelope import JobEnvelope
from handlers.registry import HandlerResult, JobContext, RegistryEntry, job_scope

logger = get_logger(__name__, ComponentType.HANDLER)


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of one handler invocation."""
    success: bool
    duration_ms: int
    output: Any = None
    error: Optional[HandlerExecutionError] = None

    @classmethod
    def succeeded(cls, duration_ms: int, output: Any = None) -> "ExecutionOutcome":
        return cls(success=True, duration_ms=duration_ms, output=output)

    @classmethod
    def failed(cls, duration_ms: int, error: HandlerExecutionError) -> "ExecutionOutcome":
        return cls(success=False, duration_ms=duration_ms, error=error)


class HandlerExecutor:
    """
    Executes handlers for one worker process.

    Usage:
        executor = HandlerExecutor(worker_id="worker-1", shutdown=event)
        outcome = await executor.execute(entry, envelope)
    """

    def __init__(self, worker_id: str, shutdown: Optional[threading.Event] = None):
        self.worker_id = worker_id
        self.shutdown = shutdown or threading.Event()

    async def execute(self, entry: RegistryEntry, envelope: JobEnvelope) -> ExecutionOutcome:
        """
        Invoke entry.execute(*envelope.args).

        Raises:
            HandlerNotFoundError: If the entry has no execute function
        """
        if entry.execute is None:
            raise HandlerNotFoundError(envelope.handler_name)

        start_time = time.monotonic()
        context = JobContext(envelope=envelope, worker_id=self.worker_id, shutdown=self.shutdown)

        try:
            result = await self._invoke(entry, envelope, context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.warning(
                f"Handler {envelope.handler_name} raised {type(e).__name__}: {e}",
                exc_info=True,
            )
            return ExecutionOutcome.failed(
                duration_ms,
                HandlerExecutionError(envelope.handler_name, f"{type(e).__name__}: {e}", cause=e),
            )

        duration_ms = int((time.monotonic() - start_time) * 1000)

        if isinstance(result, HandlerResult):
            if not result.success:
                return ExecutionOutcome.failed(
                    duration_ms,
                    HandlerExecutionError(
                        envelope.handler_name,
                        result.error_message or "Handler returned failure",
                    ),
                )
            result = result.output

        return ExecutionOutcome.succeeded(duration_ms, result)

    async def _invoke(self, entry: RegistryEntry, envelope: JobEnvelope, context: JobContext) -> Any:
        with job_scope(context):
            if entry.is_async:
                return await entry.execute(*envelope.args)

            # to_thread copies the current context, job_scope included
            result = await asyncio.to_thread(entry.execute, *envelope.args)
            if inspect.isawaitable(result):
                result = await result
            return result


__all__ = [
    "ExecutionOutcome",
    "HandlerExecutor",
]
