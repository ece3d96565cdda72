# ============================================================================
# CONSUMER RUNTIME
# ============================================================================
# STATUS: Core - Delivery processing loop
# PURPOSE: Pull deliveries, run handlers in a bounded pool, settle each once
# CREATED: 14 OCT 2026
# ============================================================================
"""
Consumer Runtime

Per-delivery state machine:

    RECEIVED -> DISPATCHING -> { ACKED | REQUEUED | REJECTED }

- Undecodable bodies go straight from RECEIVED to REJECTED
- Unknown handler names are always rejected, whatever the retry policy
- Handler failures are requeued as attempt + 1 while the policy allows,
  then rejected and reported to the observability sink
- Errors raised outside the handler are settled like handler failures;
  observability sink errors are logged and never block settlement

Concurrency:
- One pump task per queue; a pump takes a worker slot (semaphore) before
  pulling, so un-pulled messages stay in the broker
- Each delivery runs in its own task

Shutdown:
- request_shutdown() stops the pumps immediately
- In-flight tasks get shutdown_grace_seconds to finish
- Tasks still running after that are cancelled and their deliveries
  requeued unless the handle was already resolved
"""

import asyncio
import signal
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from core.config.settings import Settings
from core.errors import (
    DoubleResolutionError,
    EnvelopeDecodeError,
    HandlerExecutionError,
    TransportError,
)
from core.logging import ComponentType, get_logger, log_checkpoint, log_context
from core.models.envelope import JobEnvelope
from core.observability import LoggingSink, ObservabilitySink
from handlers.registry import HandlerRegistry
from infrastructure.transport import ReceivedDelivery, Resolution, Transport
from worker.executor import HandlerExecutor

logger = get_logger(__name__, ComponentType.WORKER)


# ============================================================================
# DELIVERY STATE
# ============================================================================

class DeliveryState(str, Enum):
    RECEIVED = "RECEIVED"
    DISPATCHING = "DISPATCHING"
    ACKED = "ACKED"
    REQUEUED = "REQUEUED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryState.ACKED, DeliveryState.REQUEUED, DeliveryState.REJECTED)


_TRANSITIONS = {
    DeliveryState.RECEIVED: {
        DeliveryState.DISPATCHING,
        DeliveryState.REJECTED,
        DeliveryState.REQUEUED,
    },
    DeliveryState.DISPATCHING: {
        DeliveryState.ACKED,
        DeliveryState.REQUEUED,
        DeliveryState.REJECTED,
    },
}

_RESOLVED_STATES = {
    Resolution.ACK: DeliveryState.ACKED,
    Resolution.REQUEUE: DeliveryState.REQUEUED,
    Resolution.REJECT: DeliveryState.REJECTED,
}


@dataclass
class DeliveryRecord:
    """Lifecycle of one delivery, with monotonic timestamps per state."""
    delivery_id: str
    queue: str
    envelope: Optional[JobEnvelope] = None
    history: List[Tuple[DeliveryState, float]] = field(
        default_factory=lambda: [(DeliveryState.RECEIVED, time.monotonic())]
    )
    error: Optional[str] = None

    @property
    def state(self) -> DeliveryState:
        return self.history[-1][0]

    def transition(self, new_state: DeliveryState) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise ValueError(
                f"Invalid delivery transition {self.state.value} -> {new_state.value}"
            )
        self.history.append((new_state, time.monotonic()))

    def entered_at(self, state: DeliveryState) -> Optional[float]:
        for recorded, at in self.history:
            if recorded == state:
                return at
        return None

    @property
    def finished_at(self) -> Optional[float]:
        return self.history[-1][1] if self.state.is_terminal else None


@dataclass
class RuntimeStats:
    received: int = 0
    acked: int = 0
    requeued: int = 0
    rejected: int = 0
    in_flight: int = 0
    started_at: Optional[datetime] = None

    def count(self, state: DeliveryState) -> None:
        if state == DeliveryState.ACKED:
            self.acked += 1
        elif state == DeliveryState.REQUEUED:
            self.requeued += 1
        elif state == DeliveryState.REJECTED:
            self.rejected += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": self.received,
            "acked": self.acked,
            "requeued": self.requeued,
            "rejected": self.rejected,
            "in_flight": self.in_flight,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


class RuntimeStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


TransitionCallback = Callable[[DeliveryRecord, DeliveryState], None]


# ============================================================================
# RUNTIME
# ============================================================================

class ConsumerRuntime:
    """
    Consumes the configured queues until shutdown.

    Usage:
        runtime = ConsumerRuntime(settings, transport, registry)
        install_signal_handlers(runtime)
        stats = await runtime.run()
    """

    def __init__(
        self,
        settings: Settings,
        transport: Transport,
        registry: HandlerRegistry,
        sink: Optional[ObservabilitySink] = None,
        on_transition: Optional[TransitionCallback] = None,
        executor: Optional[HandlerExecutor] = None,
    ):
        self.settings = settings
        self.transport = transport
        self.registry = registry
        self.sink = sink or LoggingSink()
        self.on_transition = on_transition

        # Visible to handlers through current_job().shutdown_requested
        self._handler_shutdown = threading.Event()
        self.executor = executor or HandlerExecutor(settings.worker_id, self._handler_shutdown)

        self.stats = RuntimeStats()
        self.status = RuntimeStatus.CREATED

        self._slots = asyncio.Semaphore(settings.worker_count)
        self._shutdown = asyncio.Event()
        self._pumps: List[asyncio.Task] = []
        self._inflight: Dict[asyncio.Task, Tuple[DeliveryRecord, ReceivedDelivery]] = {}
        self._fatal: Optional[BaseException] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    @property
    def fatal_error(self) -> Optional[BaseException]:
        return self._fatal

    def request_shutdown(self) -> None:
        """Stop pulling and start the grace period. Safe to call repeatedly."""
        if not self._shutdown.is_set():
            logger.info("Shutdown requested")
            self._shutdown.set()
            self._handler_shutdown.set()

    async def run(self) -> RuntimeStats:
        """
        Process deliveries until request_shutdown() or a fatal error.

        Raises:
            TransportError: A subscription failed past the failure ceiling
            DoubleResolutionError: A delivery handle was resolved twice
        """
        if self.status != RuntimeStatus.CREATED:
            raise RuntimeError(f"Runtime cannot run from status {self.status.value}")

        self.status = RuntimeStatus.RUNNING
        self.stats.started_at = datetime.now(timezone.utc)
        logger.info(
            f"Consumer runtime started: worker_id={self.settings.worker_id}, "
            f"queues={list(self.settings.queues)}, slots={self.settings.worker_count}, "
            f"transport={self.transport.name}"
        )

        self._pumps = [
            asyncio.create_task(self._pump(queue), name=f"pump:{queue}")
            for queue in self.settings.queues
        ]

        try:
            await self._shutdown.wait()
        finally:
            self.status = RuntimeStatus.DRAINING
            for pump in self._pumps:
                pump.cancel()
            await asyncio.gather(*self._pumps, return_exceptions=True)
            await self._drain()
            self.status = RuntimeStatus.STOPPED

        logger.info(f"Consumer runtime stopped. Stats: {self.stats.to_dict()}")

        if self._fatal is not None:
            raise self._fatal
        return self.stats

    def _fail(self, error: BaseException) -> None:
        if self._fatal is None:
            self._fatal = error
            logger.critical(f"Fatal runtime error: {type(error).__name__}: {error}")
        self.request_shutdown()

    # -------------------------------------------------------------------------
    # Pulling
    # -------------------------------------------------------------------------

    async def _pump(self, queue: str) -> None:
        deliveries: AsyncIterator[ReceivedDelivery] = self.transport.subscribe(queue)
        try:
            while not self._shutdown.is_set():
                await self._slots.acquire()
                try:
                    delivery = await deliveries.__anext__()
                except BaseException:
                    self._slots.release()
                    raise

                if self._shutdown.is_set():
                    # Pulled as shutdown started; hand it straight back
                    self._slots.release()
                    await self._return_unprocessed(delivery)
                    break

                self._start(delivery)

        except StopAsyncIteration:
            logger.info(f"Subscription to {queue} ended")
        except TransportError as e:
            self._fail(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error pumping {queue}")
            self._fail(e)
        finally:
            aclose = getattr(deliveries, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug(f"Error closing subscription to {queue}: {e}")

    async def _return_unprocessed(self, delivery: ReceivedDelivery) -> None:
        record = DeliveryRecord(delivery.delivery_id, delivery.queue)
        self.stats.received += 1
        await self._settle(record, DeliveryState.REQUEUED, delivery.handle.requeue())

    def _start(self, delivery: ReceivedDelivery) -> None:
        record = DeliveryRecord(delivery.delivery_id, delivery.queue)
        self.stats.received += 1
        self._notify(record, DeliveryState.RECEIVED)

        task = asyncio.create_task(
            self._process(delivery, record),
            name=f"delivery:{delivery.delivery_id}",
        )
        self._inflight[task] = (record, delivery)
        self.stats.in_flight = len(self._inflight)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._inflight.pop(task, None)
        self.stats.in_flight = len(self._inflight)
        self._slots.release()

        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        if isinstance(error, DoubleResolutionError):
            self._fail(error)
        else:
            logger.error(
                f"Delivery task {task.get_name()} crashed: {type(error).__name__}: {error}",
                exc_info=error,
            )

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def _process(self, delivery: ReceivedDelivery, record: DeliveryRecord) -> None:
        with log_context(queue=delivery.queue, worker_id=self.settings.worker_id):
            try:
                await self._handle(delivery, record)
            except (asyncio.CancelledError, DoubleResolutionError):
                raise
            except Exception as e:
                logger.exception(
                    f"Processing delivery {delivery.delivery_id} failed outside the handler"
                )
                await self._recover(delivery, record, e)

    async def _handle(self, delivery: ReceivedDelivery, record: DeliveryRecord) -> None:
        try:
            envelope = JobEnvelope.from_wire(delivery.body)
        except EnvelopeDecodeError as e:
            logger.error(f"Rejecting undecodable delivery {delivery.delivery_id}: {e}")
            record.error = str(e)
            self._report(
                self.sink.contract_violation,
                delivery.queue, delivery.body, str(e), worker_id=self.settings.worker_id,
            )
            await self._settle(
                record,
                DeliveryState.REJECTED,
                delivery.handle.reject("ContractViolation", str(e)),
            )
            return

        record.envelope = envelope
        with log_context(
            jid=envelope.jid,
            handler=envelope.handler_name,
            attempt=envelope.attempt,
        ):
            await self._dispatch(delivery, record, envelope)

    async def _recover(
        self,
        delivery: ReceivedDelivery,
        record: DeliveryRecord,
        error: Exception,
    ) -> None:
        """
        Settle a delivery whose processing raised outside handler isolation.

        The failure is treated like a handler failure: requeued as
        attempt + 1 while the retry policy allows, otherwise rejected.
        A handle that was already claimed only gets its state recorded.
        """
        handle = delivery.handle
        if handle.resolved:
            state = _RESOLVED_STATES[handle.resolution]
            if state in _TRANSITIONS.get(record.state, set()):
                self._transition(record, state)
            return

        envelope = record.envelope
        if envelope is None:
            record.error = f"{type(error).__name__}: {error}"
            await self._settle(
                record,
                DeliveryState.REJECTED,
                handle.reject("ProcessingFailed", record.error),
            )
            return

        failure = HandlerExecutionError(
            envelope.handler_name, f"{type(error).__name__}: {error}", cause=error
        )
        record.error = str(failure)

        if envelope.retry.allows_retry(envelope.attempt, self.settings.default_max_attempts):
            try:
                retried: Optional[JobEnvelope] = envelope.next_attempt(failure)
            except Exception:
                logger.exception(f"Could not build retry for job {envelope.jid}")
                retried = None
            await self._settle(
                record,
                DeliveryState.REQUEUED,
                handle.requeue(retried, self.settings.retry_delay(envelope.attempt)),
            )
            return

        reason = "RetriesExhausted" if envelope.retry.enabled else "RetryDisabled"
        self._report(
            self.sink.retries_exhausted,
            delivery.queue, envelope, str(failure), worker_id=self.settings.worker_id,
        )
        await self._settle(
            record,
            DeliveryState.REJECTED,
            handle.reject(reason, str(failure)),
        )

    def _report(self, report: Callable[..., None], *args: Any, **kwargs: Any) -> None:
        try:
            report(*args, **kwargs)
        except Exception:
            logger.exception(f"Observability sink {type(self.sink).__name__} failed")

    async def _dispatch(
        self,
        delivery: ReceivedDelivery,
        record: DeliveryRecord,
        envelope: JobEnvelope,
    ) -> None:
        self._transition(record, DeliveryState.DISPATCHING)

        entry = self.registry.get(envelope.handler_name)
        if entry is None or not entry.can_execute:
            reason = f"Handler not found: {envelope.handler_name}"
            logger.error(reason, extra={"handler": envelope.handler_name})
            record.error = reason
            self._report(
                self.sink.handler_missing,
                delivery.queue, envelope, reason, worker_id=self.settings.worker_id,
            )
            await self._settle(
                record,
                DeliveryState.REJECTED,
                delivery.handle.reject("HandlerNotFound", reason),
            )
            return

        outcome = await self.executor.execute(entry, envelope)

        if outcome.success:
            logger.info(f"Job {envelope.jid} succeeded in {outcome.duration_ms}ms")
            await self._settle(record, DeliveryState.ACKED, delivery.handle.ack())
            return

        error = outcome.error
        record.error = str(error)
        max_attempts = envelope.retry.effective_max_attempts(self.settings.default_max_attempts)

        if envelope.retry.allows_retry(envelope.attempt, self.settings.default_max_attempts):
            delay = self.settings.retry_delay(envelope.attempt)
            logger.warning(
                f"Job {envelope.jid} failed (attempt {envelope.attempt + 1}/{max_attempts}), "
                f"retrying in {delay:.1f}s: {error}"
            )
            await self._settle(
                record,
                DeliveryState.REQUEUED,
                delivery.handle.requeue(envelope.next_attempt(error), delay),
            )
            return

        reason = "RetriesExhausted" if envelope.retry.enabled else "RetryDisabled"
        logger.error(
            f"Job {envelope.jid} failed permanently after {envelope.attempt + 1} attempt(s): {error}"
        )
        self._report(
            self.sink.retries_exhausted,
            delivery.queue, envelope, str(error), worker_id=self.settings.worker_id,
        )
        await self._settle(
            record,
            DeliveryState.REJECTED,
            delivery.handle.reject(reason, str(error)),
        )

    async def _settle(self, record: DeliveryRecord, state: DeliveryState, settlement) -> None:
        """
        Await a handle resolution, then record the state.

        A settlement that fails at the broker still counts as resolved; the
        broker redelivers once the message lock lapses.
        """
        try:
            await settlement
        except TransportError as e:
            logger.error(
                f"Settling delivery {record.delivery_id} as {state.value} failed: {e}"
            )
        self._transition(record, state)

    def _transition(self, record: DeliveryRecord, state: DeliveryState) -> None:
        record.transition(state)
        self.stats.count(state)
        if state.is_terminal:
            log_checkpoint(
                f"delivery_{state.value.lower()}",
                {"delivery_id": record.delivery_id, "queue": record.queue},
                logger,
            )
        self._notify(record, state)

    def _notify(self, record: DeliveryRecord, state: DeliveryState) -> None:
        if self.on_transition is None:
            return
        try:
            self.on_transition(record, state)
        except Exception:
            logger.exception("on_transition callback failed")

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def _drain(self) -> None:
        inflight = dict(self._inflight)
        if not inflight:
            return

        grace = self.settings.shutdown_grace_seconds
        logger.info(f"Waiting up to {grace}s for {len(inflight)} in-flight deliveries")
        _, overdue = await asyncio.wait(list(inflight), timeout=grace)
        if not overdue:
            return

        logger.warning(f"Grace period over: cancelling {len(overdue)} deliveries")
        for task in overdue:
            task.cancel()
        await asyncio.wait(overdue)

        for task in overdue:
            record, delivery = inflight[task]
            if delivery.handle.resolved:
                continue
            with log_context(queue=delivery.queue, worker_id=self.settings.worker_id):
                await self._settle(record, DeliveryState.REQUEUED, delivery.handle.requeue())


def install_signal_handlers(
    runtime: ConsumerRuntime,
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> None:
    """Route SIGTERM and SIGINT to runtime.request_shutdown()."""
    loop = loop or asyncio.get_running_loop()

    def shutdown_handler(sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, shutting down")
        runtime.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown_handler, sig)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


__all__ = [
    "DeliveryState",
    "DeliveryRecord",
    "RuntimeStats",
    "RuntimeStatus",
    "TransitionCallback",
    "ConsumerRuntime",
    "install_signal_handlers",
]
