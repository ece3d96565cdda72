# ============================================================================
# TRANSPORT FACTORY
# ============================================================================
# STATUS: Infrastructure - Transport selection
# PURPOSE: Pick the transport implementation once, from the environment
# CREATED: 14 OCT 2026
# ============================================================================
"""
Transport Factory

The environment decides the transport strategy:
- test:        always in-memory
- development: follows the broker URL (memory:// or Service Bus)
- staging / production: Service Bus only; memory:// is a configuration error
"""

from typing import Callable, Dict

from core.config.settings import Environment, Settings
from core.errors import ConfigurationError
from core.logging import ComponentType, get_logger
from infrastructure.memory import InMemoryTransport
from infrastructure.service_bus import ServiceBusTransport
from infrastructure.transport import Transport

logger = get_logger(__name__, ComponentType.TRANSPORT)

TransportStrategy = Callable[[Settings], Transport]


def _memory(settings: Settings) -> Transport:
    return InMemoryTransport(settings)


def _service_bus(settings: Settings) -> Transport:
    if settings.broker_url.is_memory:
        raise ConfigurationError(
            f"memory:// broker is not allowed in {settings.environment.value}"
        )
    return ServiceBusTransport(settings)


def _from_url(settings: Settings) -> Transport:
    if settings.broker_url.is_memory:
        return _memory(settings)
    return ServiceBusTransport(settings)


TRANSPORT_STRATEGIES: Dict[Environment, TransportStrategy] = {
    Environment.TEST: _memory,
    Environment.DEVELOPMENT: _from_url,
    Environment.STAGING: _service_bus,
    Environment.PRODUCTION: _service_bus,
}


def create_transport(settings: Settings) -> Transport:
    """Build the transport for settings.environment."""
    transport = TRANSPORT_STRATEGIES[settings.environment](settings)
    logger.info(
        f"Using {transport.name} transport "
        f"(environment={settings.environment.value}, broker={settings.broker_url.redacted()})"
    )
    return transport


__all__ = [
    "TRANSPORT_STRATEGIES",
    "TransportStrategy",
    "create_transport",
]
