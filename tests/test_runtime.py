# ============================================================================
# CONSUMER RUNTIME TESTS
# ============================================================================
# STATUS: Tests - Delivery state machine, worker pool and shutdown
# PURPOSE: Verify settlement decisions end to end over the in-memory broker
# CREATED: 15 OCT 2026
# ============================================================================
"""
Consumer Runtime Tests

Covers:
1. Success -> ACKED, sync and async handlers
2. Unknown handler -> REJECTED regardless of retry policy
3. Always-failing handler with max_attempts=N runs exactly N times
4. Undecodable body -> REJECTED and reported
5. Single worker slot serializes deliveries
6. Shutdown: ack inside the grace period, requeue past it
7. Double resolution aborts the runtime
8. Transport failure past the ceiling aborts the runtime
9. Errors outside the handler still settle the delivery

Run with:
    pytest tests/test_runtime.py -v
"""

import asyncio
import threading
import time
from typing import Callable, Dict, List

import pytest

from core.config.settings import Settings
from core.errors import DoubleResolutionError, TransportError
from core.models.envelope import DispatchOptions, JobEnvelope
from core.observability import FailureKind, ObservabilitySink, RecentFailures
from handlers.proxy import register_proxy
from handlers.registry import HandlerRegistry, HandlerResult, current_job
from infrastructure.memory import InMemoryTransport
from infrastructure.transport import Resolution
from worker.runtime import (
    ConsumerRuntime,
    DeliveryRecord,
    DeliveryState,
    RuntimeStatus,
)


# ============================================================================
# FIXTURES / HELPERS
# ============================================================================

QUEUE = "jobs"


def make_settings(**overrides) -> Settings:
    values = dict(
        queues=(QUEUE,),
        default_queue=QUEUE,
        worker_count=1,
        shutdown_grace_seconds=1.0,
    )
    values.update(overrides)
    return Settings.for_environment("test", "memory://", **values)


@pytest.fixture
def registry():
    return HandlerRegistry("consumer")


@pytest.fixture
def failures():
    return RecentFailures()


class Harness:
    """Runtime wired to an in-memory transport, with transition capture."""

    def __init__(self, registry, sink=None, transport=None, executor=None, **settings_overrides):
        self.settings = make_settings(**settings_overrides)
        self.transport = transport or InMemoryTransport(self.settings)
        self.records: Dict[str, DeliveryRecord] = {}
        self.order: List[str] = []
        self.runtime = ConsumerRuntime(
            self.settings,
            self.transport,
            registry,
            sink=sink,
            on_transition=self._capture,
            executor=executor,
        )

    def _capture(self, record: DeliveryRecord, state: DeliveryState) -> None:
        if state == DeliveryState.RECEIVED:
            self.order.append(record.delivery_id)
        self.records[record.delivery_id] = record

    def publish(self, handler_name, args=(), retry=True, **fields):
        envelope = JobEnvelope(
            handler_name=handler_name, queue=QUEUE, args=args, retry=retry, **fields
        )
        self.transport.put_raw(QUEUE, envelope.to_wire())
        return envelope

    def settled(self, count: int) -> Callable[[], bool]:
        return lambda: len(self.transport.settlements) >= count

    async def run_until(self, predicate: Callable[[], bool], timeout: float = 5.0):
        """Run the runtime until predicate() holds, then shut down."""
        task = asyncio.create_task(self.runtime.run())
        deadline = time.monotonic() + timeout
        try:
            while not predicate() and not task.done():
                if time.monotonic() > deadline:
                    raise AssertionError("Timed out waiting for runtime condition")
                await asyncio.sleep(0.01)
        finally:
            self.runtime.request_shutdown()
        return await task

    def records_in_order(self) -> List[DeliveryRecord]:
        return [self.records[delivery_id] for delivery_id in self.order]


def resolutions(transport: InMemoryTransport) -> List[Resolution]:
    return [s.resolution for s in transport.settlements]


# ============================================================================
# SUCCESS
# ============================================================================

class TestSuccess:

    def test_async_handler_success_acks(self, registry):
        calls = []

        async def send_email(address, subject):
            calls.append((address, subject))

        registry.register("EmailWorker", execute=send_email)
        harness = Harness(registry)
        harness.publish("EmailWorker", ["a@example.org", "Welcome"])

        stats = asyncio.run(harness.run_until(harness.settled(1)))

        assert calls == [("a@example.org", "Welcome")]
        assert resolutions(harness.transport) == [Resolution.ACK]
        assert stats.received == 1
        assert stats.acked == 1
        record = harness.records_in_order()[0]
        assert [state for state, _ in record.history] == [
            DeliveryState.RECEIVED, DeliveryState.DISPATCHING, DeliveryState.ACKED,
        ]

    def test_sync_handler_runs_in_worker_thread(self, registry):
        seen = {}

        def checksum(value):
            seen["thread"] = threading.current_thread()
            seen["jid"] = current_job().jid
            return value[::-1]

        registry.register("checksum", execute=checksum)
        harness = Harness(registry)
        envelope = harness.publish("checksum", ["abc"])

        asyncio.run(harness.run_until(harness.settled(1)))

        assert seen["thread"] is not threading.main_thread()
        assert seen["jid"] == envelope.jid
        assert resolutions(harness.transport) == [Resolution.ACK]

    def test_runtime_cannot_run_twice(self, registry):
        harness = Harness(registry)

        async def scenario():
            harness.runtime.request_shutdown()
            await harness.runtime.run()
            await harness.runtime.run()

        with pytest.raises(RuntimeError):
            asyncio.run(scenario())
        assert harness.runtime.status == RuntimeStatus.STOPPED


# ============================================================================
# NOT FOUND
# ============================================================================

class TestHandlerNotFound:

    def test_unknown_handler_rejected_despite_retry(self, registry, failures):
        harness = Harness(registry, sink=failures)
        envelope = harness.publish("Missing::Worker", [1], retry=25)

        stats = asyncio.run(harness.run_until(harness.settled(1)))

        assert resolutions(harness.transport) == [Resolution.REJECT]
        assert stats.requeued == 0
        # Nothing was republished
        assert len(harness.transport.published) == 1

        dead = harness.transport.dead_letters[QUEUE][0]
        assert dead.reason == "HandlerNotFound"
        assert "Missing::Worker" in dead.description

        event = failures.events[0]
        assert event.kind == FailureKind.HANDLER_MISSING
        assert event.envelope.jid == envelope.jid

    def test_producer_only_entry_rejected(self, registry, failures):
        register_proxy(registry, "EmailWorkerProxy", queue=QUEUE)
        registry.register("ReportExport", DispatchOptions.build(queue=QUEUE))
        harness = Harness(registry, sink=failures)
        harness.publish("EmailWorkerProxy")
        harness.publish("ReportExport")

        asyncio.run(harness.run_until(harness.settled(2)))

        assert resolutions(harness.transport) == [Resolution.REJECT, Resolution.REJECT]
        assert failures.counts() == {"handler_missing": 2}


# ============================================================================
# RETRY POLICY
# ============================================================================

class TestRetryPolicy:

    @pytest.mark.parametrize("max_attempts", [1, 2, 3, 5])
    def test_always_failing_handler_runs_max_attempts_times(self, registry, failures, max_attempts):
        calls = []

        async def always_fails(order_id):
            calls.append(current_job().attempt)
            raise ConnectionError("smtp down")

        registry.register("EmailWorker", execute=always_fails)
        harness = Harness(registry, sink=failures)
        harness.publish("EmailWorker", [7], retry=max_attempts)

        stats = asyncio.run(harness.run_until(harness.settled(max_attempts)))

        assert calls == list(range(max_attempts))
        assert resolutions(harness.transport) == (
            [Resolution.REQUEUE] * (max_attempts - 1) + [Resolution.REJECT]
        )
        assert stats.requeued == max_attempts - 1
        assert stats.rejected == 1

        final = failures.events[-1]
        assert final.kind == FailureKind.RETRIES_EXHAUSTED
        assert final.envelope.attempt == max_attempts - 1
        dead = harness.transport.dead_letters[QUEUE][0]
        assert dead.reason == "RetriesExhausted"

    def test_retried_envelopes_carry_attempt_and_error(self, registry):
        async def always_fails():
            raise ValueError("bad input")

        registry.register("EmailWorker", execute=always_fails)
        harness = Harness(registry)
        original = harness.publish("EmailWorker", retry=3)

        asyncio.run(harness.run_until(harness.settled(3)))

        envelopes = harness.transport.published_envelopes(QUEUE)
        assert [e.attempt for e in envelopes] == [0, 1, 2]
        assert {e.jid for e in envelopes} == {original.jid}
        assert envelopes[1].error_class == "ValueError"
        assert "bad input" in envelopes[2].error_message

    def test_retry_disabled_rejects_after_one_attempt(self, registry, failures):
        calls = []

        def fails(*args):
            calls.append(args)
            raise RuntimeError("nope")

        registry.register("EmailWorker", execute=fails)
        harness = Harness(registry, sink=failures)
        harness.publish("EmailWorker", ["x"], retry=False)

        asyncio.run(harness.run_until(harness.settled(1)))

        assert len(calls) == 1
        assert resolutions(harness.transport) == [Resolution.REJECT]
        assert harness.transport.dead_letters[QUEUE][0].reason == "RetryDisabled"
        assert failures.events[0].kind == FailureKind.RETRIES_EXHAUSTED

    def test_retry_true_uses_configured_default(self, registry):
        calls = []

        async def always_fails():
            calls.append(1)
            raise RuntimeError("nope")

        registry.register("EmailWorker", execute=always_fails)
        harness = Harness(registry, default_max_attempts=4)
        harness.publish("EmailWorker", retry=True)

        asyncio.run(harness.run_until(harness.settled(4)))

        assert len(calls) == 4

    def test_failure_result_counts_as_failure(self, registry):
        attempts = []

        async def flaky():
            attempt = current_job().attempt
            attempts.append(attempt)
            if attempt == 0:
                return HandlerResult.failure_result("first try fails")
            return HandlerResult.success_result({"ok": True})

        registry.register("flaky", execute=flaky)
        harness = Harness(registry)
        harness.publish("flaky", retry=3)

        asyncio.run(harness.run_until(harness.settled(2)))

        assert attempts == [0, 1]
        assert resolutions(harness.transport) == [Resolution.REQUEUE, Resolution.ACK]


# ============================================================================
# CONTRACT VIOLATIONS
# ============================================================================

class TestMalformedBody:

    @pytest.mark.parametrize("body", ["{not json", '{"queue": "jobs"}', '"just a string"'])
    def test_undecodable_body_rejected_and_reported(self, registry, failures, body):
        harness = Harness(registry, sink=failures)
        harness.transport.put_raw(QUEUE, body)

        stats = asyncio.run(harness.run_until(harness.settled(1)))

        assert resolutions(harness.transport) == [Resolution.REJECT]
        assert harness.transport.dead_letters[QUEUE][0].reason == "ContractViolation"
        assert stats.rejected == 1

        event = failures.events[0]
        assert event.kind == FailureKind.CONTRACT_VIOLATION
        assert event.body == body
        assert event.envelope is None

        record = harness.records_in_order()[0]
        assert [state for state, _ in record.history] == [
            DeliveryState.RECEIVED, DeliveryState.REJECTED,
        ]

    def test_bad_body_does_not_stop_the_queue(self, registry):
        async def ok():
            return None

        registry.register("ok", execute=ok)
        harness = Harness(registry)
        harness.transport.put_raw(QUEUE, "garbage")
        harness.publish("ok")

        asyncio.run(harness.run_until(harness.settled(2)))

        assert resolutions(harness.transport) == [Resolution.REJECT, Resolution.ACK]


# ============================================================================
# WORKER POOL
# ============================================================================

class TestWorkerPool:

    def _concurrency_probe(self, registry):
        state = {"current": 0, "max": 0}

        async def probe():
            state["current"] += 1
            state["max"] = max(state["max"], state["current"])
            await asyncio.sleep(0.05)
            state["current"] -= 1

        registry.register("probe", execute=probe)
        return state

    def test_single_slot_serializes_deliveries(self, registry):
        state = self._concurrency_probe(registry)
        harness = Harness(registry, worker_count=1)
        harness.publish("probe")
        harness.publish("probe")

        asyncio.run(harness.run_until(harness.settled(2)))

        assert state["max"] == 1
        first, second = harness.records_in_order()
        # The second delivery is not even pulled before the first settles
        assert second.entered_at(DeliveryState.RECEIVED) >= first.finished_at
        assert second.entered_at(DeliveryState.DISPATCHING) >= first.finished_at

    def test_slots_allow_parallel_deliveries(self, registry):
        state = self._concurrency_probe(registry)
        harness = Harness(registry, worker_count=3)
        for _ in range(3):
            harness.publish("probe")

        asyncio.run(harness.run_until(harness.settled(3)))

        assert state["max"] == 3

    def test_unpulled_messages_stay_in_the_broker(self, registry):
        started = []

        async def slow():
            started.append(1)
            await asyncio.sleep(0.2)

        registry.register("slow", execute=slow)
        harness = Harness(registry, worker_count=1)
        for _ in range(3):
            harness.publish("slow")

        async def scenario():
            task = asyncio.create_task(harness.runtime.run())
            while not started:
                await asyncio.sleep(0.01)
            pending = harness.transport.pending(QUEUE)
            harness.runtime.request_shutdown()
            await task
            return pending

        assert asyncio.run(scenario()) == 2


# ============================================================================
# SHUTDOWN
# ============================================================================

class TestShutdown:

    def _slow_handler(self, registry, duration):
        started = threading.Event()

        async def slow():
            started.set()
            await asyncio.sleep(duration)
            return "done"

        registry.register("slow", execute=slow)
        return started

    def test_handler_finishing_within_grace_is_acked(self, registry):
        started = self._slow_handler(registry, 0.1)
        harness = Harness(registry, shutdown_grace_seconds=2.0)
        harness.publish("slow")

        stats = asyncio.run(harness.run_until(started.is_set))

        assert resolutions(harness.transport) == [Resolution.ACK]
        assert stats.acked == 1
        assert harness.transport.pending(QUEUE) == 0

    def test_handler_past_grace_is_requeued(self, registry):
        started = self._slow_handler(registry, 30.0)
        harness = Harness(registry, shutdown_grace_seconds=0.1)
        envelope = harness.publish("slow")

        begin = time.monotonic()
        stats = asyncio.run(harness.run_until(started.is_set))

        assert time.monotonic() - begin < 5.0
        assert resolutions(harness.transport) == [Resolution.REQUEUE]
        assert stats.requeued == 1
        # Original message back in the queue, attempt unchanged
        assert harness.transport.pending(QUEUE) == 1
        assert len(harness.transport.published) == 1
        record = harness.records_in_order()[0]
        assert record.state == DeliveryState.REQUEUED
        assert record.envelope.jid == envelope.jid

    def test_handler_sees_shutdown_flag(self, registry):
        started = threading.Event()

        def cooperative():
            job = current_job()
            started.set()
            stopped = job.shutdown.wait(timeout=5.0)
            return "stopped" if stopped else "timed out"

        registry.register("cooperative", execute=cooperative)
        harness = Harness(registry, shutdown_grace_seconds=2.0)
        harness.publish("cooperative")

        stats = asyncio.run(harness.run_until(started.is_set))

        assert stats.acked == 1
        assert resolutions(harness.transport) == [Resolution.ACK]

    def test_idle_shutdown_returns_promptly(self, registry):
        harness = Harness(registry)

        async def scenario():
            task = asyncio.create_task(harness.runtime.run())
            await asyncio.sleep(0.05)
            harness.runtime.request_shutdown()
            return await asyncio.wait_for(task, timeout=2.0)

        stats = asyncio.run(scenario())
        assert stats.received == 0
        assert harness.runtime.status == RuntimeStatus.STOPPED


# ============================================================================
# FATAL ERRORS
# ============================================================================

class ReplayingTransport(InMemoryTransport):
    """Buggy broker that hands out every delivery twice."""

    async def subscribe(self, queue):
        async for delivery in super().subscribe(queue):
            yield delivery
            yield delivery


class BrokenTransport(InMemoryTransport):
    """Broker whose receive path is down for good."""

    async def subscribe(self, queue):
        raise TransportError("receive failed 5 times in a row")
        yield  # pragma: no cover


class TestFatalErrors:

    def test_double_resolution_aborts_runtime(self, registry):
        async def ok():
            return None

        registry.register("ok", execute=ok)
        harness = Harness(registry, transport=ReplayingTransport())
        harness.publish("ok")

        with pytest.raises(DoubleResolutionError):
            asyncio.run(harness.run_until(lambda: False))

        assert harness.runtime.fatal_error is not None
        assert resolutions(harness.transport) == [Resolution.ACK]

    def test_transport_failure_aborts_runtime(self, registry):
        harness = Harness(registry, transport=BrokenTransport())

        with pytest.raises(TransportError):
            asyncio.run(harness.run_until(lambda: False))

        assert harness.runtime.status == RuntimeStatus.STOPPED


# ============================================================================
# FAILURES OUTSIDE THE HANDLER
# ============================================================================

class BrokenSink(ObservabilitySink):
    """Sink whose backend is down."""

    def record(self, event):
        raise ConnectionError("telemetry endpoint unreachable")


class BrokenExecutor:
    """Executor that fails before the handler ever runs."""

    async def execute(self, entry, envelope):
        raise RuntimeError("executor crashed")


class AckFailingTransport(InMemoryTransport):
    """Broker whose complete call fails with an unexpected error."""

    async def subscribe(self, queue):
        async for delivery in super().subscribe(queue):
            delivery.handle._ack = self._broken_ack
            yield delivery

    async def _broken_ack(self):
        raise RuntimeError("complete call crashed")


class TestFailuresOutsideHandler:

    def test_broken_sink_does_not_block_handler_not_found(self, registry):
        harness = Harness(registry, sink=BrokenSink())
        harness.publish("Missing", retry=5)

        stats = asyncio.run(harness.run_until(harness.settled(1)))

        assert resolutions(harness.transport) == [Resolution.REJECT]
        assert harness.transport.dead_letters[QUEUE][0].reason == "HandlerNotFound"
        assert stats.rejected == 1
        assert stats.requeued == 0

    def test_broken_sink_does_not_block_contract_violation(self, registry):
        harness = Harness(registry, sink=BrokenSink())
        harness.transport.put_raw(QUEUE, "{not json")

        asyncio.run(harness.run_until(harness.settled(1)))

        assert harness.transport.dead_letters[QUEUE][0].reason == "ContractViolation"

    def test_broken_sink_does_not_block_exhausted_retries(self, registry):
        def fail():
            raise ValueError("nope")

        registry.register("fail", execute=fail)
        harness = Harness(registry, sink=BrokenSink())
        harness.publish("fail", retry=False)

        asyncio.run(harness.run_until(harness.settled(1)))

        assert harness.transport.dead_letters[QUEUE][0].reason == "RetryDisabled"

    def test_executor_error_is_retried_like_a_handler_failure(self, registry):
        registry.register("ok", execute=lambda: None)
        harness = Harness(registry, executor=BrokenExecutor())
        harness.publish("ok", retry=2)

        stats = asyncio.run(harness.run_until(harness.settled(2)))

        assert resolutions(harness.transport) == [Resolution.REQUEUE, Resolution.REJECT]
        retried = harness.transport.published_envelopes(QUEUE)[1]
        assert retried.attempt == 1
        assert retried.error_class == "RuntimeError"
        assert harness.transport.dead_letters[QUEUE][0].reason == "RetriesExhausted"
        assert stats.requeued == 1
        assert stats.rejected == 1
        assert harness.runtime.fatal_error is None

    def test_executor_error_without_retry_is_rejected(self, registry):
        registry.register("ok", execute=lambda: None)
        harness = Harness(registry, executor=BrokenExecutor())
        harness.publish("ok", retry=False)

        asyncio.run(harness.run_until(harness.settled(1)))

        [record] = harness.records_in_order()
        assert record.state == DeliveryState.REJECTED
        assert "executor crashed" in record.error
        assert harness.transport.dead_letters[QUEUE][0].reason == "RetryDisabled"

    def test_claimed_settlement_that_crashes_is_recorded(self, registry):
        registry.register("ok", execute=lambda: None)
        harness = Harness(registry, transport=AckFailingTransport())
        harness.publish("ok")
        harness.publish("ok")

        stats = asyncio.run(harness.run_until(lambda: harness.runtime.stats.acked >= 2))

        assert stats.acked == 2
        assert [r.state for r in harness.records_in_order()] == [DeliveryState.ACKED] * 2
        assert harness.runtime.fatal_error is None


# ============================================================================
# DELIVERY RECORD
# ============================================================================

class TestDeliveryRecord:

    def test_transitions_are_monotonic(self):
        record = DeliveryRecord("d-1", QUEUE)
        record.transition(DeliveryState.DISPATCHING)
        record.transition(DeliveryState.ACKED)

        times = [at for _, at in record.history]
        assert times == sorted(times)
        assert record.finished_at == times[-1]

    def test_terminal_state_is_final(self):
        record = DeliveryRecord("d-1", QUEUE)
        record.transition(DeliveryState.DISPATCHING)
        record.transition(DeliveryState.ACKED)

        with pytest.raises(ValueError):
            record.transition(DeliveryState.REQUEUED)

    def test_cannot_ack_before_dispatching(self):
        record = DeliveryRecord("d-1", QUEUE)
        with pytest.raises(ValueError):
            record.transition(DeliveryState.ACKED)
