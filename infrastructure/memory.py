# ============================================================================
# IN-MEMORY TRANSPORT
# ============================================================================
# STATUS: Infrastructure - Broker stand-in for tests and local runs
# PURPOSE: asyncio queues with the same settlement contract as Service Bus
# CREATED: 13 OCT 2026
# ============================================================================
"""
In-Memory Transport

Single-process transport selected by the test profile or a memory:// URL.
Keeps a log of everything published, settled and dead-lettered so tests
can assert on broker-side effects.
"""

import asyncio
import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Tuple

from core.config.settings import Settings
from core.errors import TransportError
from core.models.envelope import JobEnvelope
from infrastructure.transport import (
    DeliveryHandle,
    ReceivedDelivery,
    Resolution,
    Transport,
)

logger = logging.getLogger(__name__)


@dataclass
class _StoredMessage:
    message_id: str
    body: str
    delivery_count: int = 0


@dataclass(frozen=True)
class DeadLetter:
    """A rejected message."""
    queue: str
    message_id: str
    body: str
    reason: str
    description: str
    delivery_count: int


@dataclass(frozen=True)
class Settlement:
    """One resolved delivery."""
    queue: str
    delivery_id: str
    resolution: Resolution
    body: str


class InMemoryDeliveryHandle(DeliveryHandle):

    def __init__(self, transport: "InMemoryTransport", queue: str, message: _StoredMessage):
        super().__init__(f"{message.message_id}#{message.delivery_count}")
        self._transport = transport
        self._queue = queue
        self._message = message

    def _record(self) -> None:
        self._transport.settlements.append(
            Settlement(self._queue, self.delivery_id, self.resolution, self._message.body)
        )

    async def requeue(
        self,
        envelope: Optional[JobEnvelope] = None,
        delay_seconds: float = 0.0,
    ) -> None:
        # A closed transport cannot take the message back; leave the handle unclaimed
        if self._transport._closed and not self.resolved:
            raise TransportError("In-memory transport is closed", transient=False)
        await super().requeue(envelope, delay_seconds)

    async def _ack(self) -> None:
        self._record()

    async def _requeue(self, envelope: Optional[JobEnvelope], delay_seconds: float) -> None:
        if envelope is None:
            message = self._message
        else:
            message = self._transport._new_message(envelope.to_wire())
        self._transport._enqueue(self._queue, message, delay_seconds)
        if envelope is not None:
            self._transport.published.append((self._queue, message.body))
        self._record()

    async def _reject(self, reason: str, description: str) -> None:
        self._record()
        self._transport.dead_letters[self._queue].append(
            DeadLetter(
                queue=self._queue,
                message_id=self._message.message_id,
                body=self._message.body,
                reason=reason,
                description=description,
                delivery_count=self._message.delivery_count,
            )
        )


class InMemoryTransport(Transport):
    """
    Transport backed by one asyncio.Queue per queue name.

    Attributes:
        published: (queue, body) for every publish, including retries
        settlements: Every resolved delivery in resolution order
        dead_letters: Rejected messages per queue
    """

    name = "memory"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings
        self.published: List[Tuple[str, str]] = []
        self.settlements: List[Settlement] = []
        self.dead_letters: Dict[str, List[DeadLetter]] = defaultdict(list)
        self._queues: Dict[str, asyncio.Queue] = {}
        self._timers: List[asyncio.TimerHandle] = []
        self._ids = itertools.count(1)
        self._closed = False

    async def connect(self) -> None:
        self._closed = False

    async def close(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        self._closed = True
        logger.debug("In-memory transport closed")

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    def _new_message(self, body: str) -> _StoredMessage:
        return _StoredMessage(message_id=f"mem-{next(self._ids)}", body=body)

    def _enqueue(self, queue: str, message: _StoredMessage, delay_seconds: float = 0.0) -> None:
        if self._closed:
            raise TransportError("In-memory transport is closed", transient=False)
        if delay_seconds > 0:
            loop = asyncio.get_running_loop()
            self._timers.append(
                loop.call_later(delay_seconds, self._deliver_later, queue, message)
            )
        else:
            self._queue(queue).put_nowait(message)

    def _deliver_later(self, queue: str, message: _StoredMessage) -> None:
        if not self._closed:
            self._queue(queue).put_nowait(message)

    # -------------------------------------------------------------------------
    # Transport API
    # -------------------------------------------------------------------------

    async def publish(self, queue: str, envelope: JobEnvelope) -> str:
        return self.put_raw(queue, envelope.to_wire())

    def put_raw(self, queue: str, body: str) -> str:
        """Enqueue a body as-is, bypassing envelope encoding."""
        message = self._new_message(body)
        self._enqueue(queue, message)
        self.published.append((queue, body))
        logger.debug(f"Published {message.message_id} to {queue}")
        return message.message_id

    async def subscribe(self, queue: str) -> AsyncIterator[ReceivedDelivery]:
        pending = self._queue(queue)
        while True:
            message = await pending.get()
            message.delivery_count += 1
            yield ReceivedDelivery(
                queue=queue,
                body=message.body,
                handle=InMemoryDeliveryHandle(self, queue, message),
                delivery_count=message.delivery_count,
            )

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def pending(self, queue: str) -> int:
        """Messages waiting in a queue (scheduled ones excluded)."""
        return self._queue(queue).qsize()

    def published_envelopes(self, queue: Optional[str] = None) -> List[JobEnvelope]:
        return [
            JobEnvelope.from_wire(body)
            for q, body in self.published
            if queue is None or q == queue
        ]

    def resolutions(self, resolution: Resolution) -> List[Settlement]:
        return [s for s in self.settlements if s.resolution == resolution]


__all__ = [
    "DeadLetter",
    "Settlement",
    "InMemoryDeliveryHandle",
    "InMemoryTransport",
]
