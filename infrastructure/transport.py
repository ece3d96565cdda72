# ============================================================================
# TRANSPORT INTERFACE
# ============================================================================
# STATUS: Infrastructure - Broker abstraction
# PURPOSE: Publish envelopes and consume deliveries with exactly-once settlement
# CREATED: 13 OCT 2026
# ============================================================================
"""
Transport Interface

The only component that talks to the broker. Implementations:
- ServiceBusTransport (infrastructure.service_bus)
- InMemoryTransport (infrastructure.memory)

Delivery semantics are at-least-once. Each received delivery carries a
DeliveryHandle that must be resolved exactly once with ack, requeue or
reject. A second resolution raises DoubleResolutionError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

from core.errors import DoubleResolutionError
from core.models.envelope import JobEnvelope


class Resolution(str, Enum):
    """How a delivery was settled."""
    ACK = "ack"
    REQUEUE = "requeue"
    REJECT = "reject"


class DeliveryHandle(ABC):
    """
    Settlement token for one received message.

    The handle is claimed synchronously before any broker I/O, so a task
    cancelled mid-settlement still counts as resolved.
    """

    def __init__(self, delivery_id: str):
        self.delivery_id = delivery_id
        self._resolution: Optional[Resolution] = None

    @property
    def resolution(self) -> Optional[Resolution]:
        return self._resolution

    @property
    def resolved(self) -> bool:
        return self._resolution is not None

    def _claim(self, resolution: Resolution) -> None:
        if self._resolution is not None:
            raise DoubleResolutionError(
                self.delivery_id, self._resolution.value, resolution.value
            )
        self._resolution = resolution

    async def ack(self) -> None:
        """Processing succeeded; remove the message."""
        self._claim(Resolution.ACK)
        await self._ack()

    async def requeue(
        self,
        envelope: Optional[JobEnvelope] = None,
        delay_seconds: float = 0.0,
    ) -> None:
        """
        Return work to the queue.

        With an envelope, that envelope is published in place of the
        original (retries publish attempt + 1). Without one, the original
        message goes back unchanged.
        """
        self._claim(Resolution.REQUEUE)
        await self._requeue(envelope, max(0.0, delay_seconds))

    async def reject(self, reason: str, description: str = "") -> None:
        """Dead-letter the message; it will not be redelivered."""
        self._claim(Resolution.REJECT)
        await self._reject(reason, description)

    @abstractmethod
    async def _ack(self) -> None:
        ...

    @abstractmethod
    async def _requeue(self, envelope: Optional[JobEnvelope], delay_seconds: float) -> None:
        ...

    @abstractmethod
    async def _reject(self, reason: str, description: str) -> None:
        ...

    def __repr__(self) -> str:
        state = self._resolution.value if self._resolution else "pending"
        return f"{type(self).__name__}({self.delivery_id!r}, {state})"


@dataclass(frozen=True)
class ReceivedDelivery:
    """A message popped from a queue, not yet decoded."""
    queue: str
    body: str
    handle: DeliveryHandle
    delivery_count: int = 0

    @property
    def delivery_id(self) -> str:
        return self.handle.delivery_id


class Transport(ABC):
    """
    Broker client.

    Usage:
        async with create_transport(settings) as transport:
            await transport.publish("email", envelope)

            async for delivery in transport.subscribe("email"):
                await delivery.handle.ack()
    """

    name: str = "transport"

    @abstractmethod
    async def connect(self) -> None:
        """Open broker connections. Idempotent."""

    @abstractmethod
    async def close(self) -> None:
        """Release broker connections. Idempotent."""

    @abstractmethod
    async def publish(self, queue: str, envelope: JobEnvelope) -> str:
        """
        Publish an envelope to a queue.

        Returns:
            Broker message id

        Raises:
            TransportError: Broker unreachable, or a permanent broker failure
        """

    @abstractmethod
    def subscribe(self, queue: str) -> AsyncIterator[ReceivedDelivery]:
        """
        Lazily yield deliveries from a queue.

        The iterator is potentially infinite and cannot be restarted.

        Raises:
            TransportError: When consecutive receive failures pass the
                configured ceiling
        """

    async def __aenter__(self) -> "Transport":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


__all__ = [
    "Resolution",
    "DeliveryHandle",
    "ReceivedDelivery",
    "Transport",
]
