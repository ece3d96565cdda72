# ============================================================================
# INFRASTRUCTURE MODULE
# ============================================================================
# STATUS: Infrastructure - Broker transports
# PURPOSE: Publish and consume job envelopes
# CREATED: 13 OCT 2026
# ============================================================================
"""
Infrastructure module.

Provides:
- Transport / DeliveryHandle: broker abstraction with exactly-once settlement
- ServiceBusTransport: Azure Service Bus implementation
- InMemoryTransport: in-process implementation for tests and local runs
- create_transport: environment-driven selection

Usage:
    from infrastructure import create_transport

    async with create_transport(settings) as transport:
        await transport.publish("email", envelope)
"""

from infrastructure.transport import (
    DeliveryHandle,
    ReceivedDelivery,
    Resolution,
    Transport,
)
from infrastructure.memory import (
    DeadLetter,
    InMemoryTransport,
    Settlement,
)
from infrastructure.service_bus import ServiceBusTransport
from infrastructure.factory import (
    TRANSPORT_STRATEGIES,
    create_transport,
)

__all__ = [
    # Interface
    'DeliveryHandle',
    'ReceivedDelivery',
    'Resolution',
    'Transport',
    # In-memory
    'DeadLetter',
    'InMemoryTransport',
    'Settlement',
    # Service Bus
    'ServiceBusTransport',
    # Selection
    'TRANSPORT_STRATEGIES',
    'create_transport',
]
