# ============================================================================
# PROCESS SETTINGS
# ============================================================================
# STATUS: Core - Immutable process configuration
# PURPOSE: Resolve settings once at start-up from an environment profile
# CREATED: 12 OCT 2026
# ============================================================================
"""
Process Settings

Settings are resolved once at start-up and injected into the transport,
dispatcher and consumer runtime. Nothing reads the environment after that.

Design:
- Frozen dataclass, validated in __post_init__
- Environment enum selects a profile of defaults
- DISPATCH_* environment variables override the profile
"""

import os
import socket
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from core.config.broker_url import BrokerURL
from core.errors import ConfigurationError
from core.models.envelope import DEFAULT_MAX_ATTEMPTS

ENV_PREFIX = "DISPATCH_"
DEFAULT_QUEUE = "default"


class Environment(str, Enum):
    """Deployment environment, selects a settings profile."""
    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"

    @classmethod
    def parse(cls, value: str) -> "Environment":
        normalized = (value or "").strip().lower()
        aliases = {"dev": "development", "prod": "production"}
        normalized = aliases.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            raise ConfigurationError(
                f"Unknown environment {value!r} "
                f"(expected one of {', '.join(e.value for e in cls)})"
            )


def _default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


@dataclass(frozen=True)
class Settings:
    """Configuration for producers and consumers."""

    environment: Environment
    broker_url: BrokerURL

    # Queues
    queues: Tuple[str, ...] = (DEFAULT_QUEUE,)
    default_queue: str = DEFAULT_QUEUE

    # Worker pool
    worker_id: str = field(default_factory=_default_worker_id)
    worker_count: int = 5
    shutdown_grace_seconds: float = 25.0
    lock_renewal_seconds: float = 300.0
    receive_wait_seconds: float = 5.0

    # Transport
    publish_retry_count: int = 3
    publish_retry_delay_seconds: float = 1.0
    transport_failure_ceiling: int = 5

    # Retry policy defaults
    retry_base_delay_seconds: float = 15.0
    retry_max_delay_seconds: float = 3600.0
    default_max_attempts: int = DEFAULT_MAX_ATTEMPTS

    # Handler loading
    handler_modules: Tuple[str, ...] = ()

    # Logging / probes
    log_level: str = "INFO"
    log_json: bool = False
    health_port: int = 8000

    def __post_init__(self) -> None:
        # Frozen: normalize sequences in place
        object.__setattr__(self, "queues", tuple(self.queues))
        object.__setattr__(self, "handler_modules", tuple(self.handler_modules))

        if not self.queues or any(not q.strip() for q in self.queues):
            raise ConfigurationError("At least one non-empty queue is required")
        if not self.default_queue.strip():
            raise ConfigurationError("default_queue must not be empty")
        if self.worker_count < 1:
            raise ConfigurationError(f"worker_count must be >= 1, got {self.worker_count}")
        if self.shutdown_grace_seconds < 0:
            raise ConfigurationError("shutdown_grace_seconds must be >= 0")
        if self.lock_renewal_seconds <= 0:
            raise ConfigurationError("lock_renewal_seconds must be > 0")
        if self.receive_wait_seconds <= 0:
            raise ConfigurationError("receive_wait_seconds must be > 0")
        if self.publish_retry_count < 1:
            raise ConfigurationError("publish_retry_count must be >= 1")
        if self.transport_failure_ceiling < 1:
            raise ConfigurationError("transport_failure_ceiling must be >= 1")
        if self.retry_base_delay_seconds < 0 or self.retry_max_delay_seconds < 0:
            raise ConfigurationError("retry delays must be >= 0")
        if self.default_max_attempts < 1:
            raise ConfigurationError("default_max_attempts must be >= 1")
        if not 0 <= self.health_port <= 65535:
            raise ConfigurationError(f"health_port out of range: {self.health_port}")

    def retry_delay(self, attempt: int) -> float:
        """Backoff before redelivering a job that failed at `attempt`."""
        return min(
            self.retry_base_delay_seconds * (2 ** attempt),
            self.retry_max_delay_seconds,
        )

    def with_overrides(self, **overrides: Any) -> "Settings":
        return replace(self, **overrides)

    @classmethod
    def for_environment(
        cls,
        environment: Union[Environment, str],
        broker_url: Union[BrokerURL, str],
        **overrides: Any,
    ) -> "Settings":
        """Build settings from the environment profile plus overrides."""
        if not isinstance(environment, Environment):
            environment = Environment.parse(environment)
        if not isinstance(broker_url, BrokerURL):
            broker_url = BrokerURL.parse(broker_url)

        values: Dict[str, Any] = dict(PROFILES[environment])
        values.update(overrides)
        return cls(environment=environment, broker_url=broker_url, **values)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Load settings from environment variables.

        Required:
            DISPATCH_BROKER_URL: Broker URL

        Optional (profile defaults apply otherwise):
            DISPATCH_ENV, DISPATCH_QUEUES, DISPATCH_DEFAULT_QUEUE,
            DISPATCH_WORKER_ID, DISPATCH_WORKER_COUNT,
            DISPATCH_SHUTDOWN_GRACE, DISPATCH_LOCK_RENEWAL,
            DISPATCH_RECEIVE_WAIT, DISPATCH_PUBLISH_RETRIES,
            DISPATCH_PUBLISH_RETRY_DELAY, DISPATCH_TRANSPORT_FAILURE_CEILING,
            DISPATCH_RETRY_BASE_DELAY, DISPATCH_RETRY_MAX_DELAY,
            DISPATCH_DEFAULT_MAX_ATTEMPTS, DISPATCH_HANDLER_MODULES,
            DISPATCH_LOG_LEVEL, DISPATCH_LOG_FORMAT, DISPATCH_HEALTH_PORT
        """
        env = os.environ if environ is None else environ

        broker_url = env.get(f"{ENV_PREFIX}BROKER_URL", "")
        if not broker_url:
            raise ConfigurationError(f"{ENV_PREFIX}BROKER_URL environment variable is required")

        environment = Environment.parse(env.get(f"{ENV_PREFIX}ENV", "development"))

        overrides: Dict[str, Any] = {}
        for key, (attr, parser) in _ENV_FIELDS.items():
            raw = env.get(f"{ENV_PREFIX}{key}")
            if raw is None or raw == "":
                continue
            try:
                overrides[attr] = parser(raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid {ENV_PREFIX}{key}={raw!r}: {e}")

        return cls.for_environment(environment, broker_url, **overrides)

    def describe(self) -> Dict[str, Any]:
        """Settings as a loggable dict, secrets redacted."""
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, BrokerURL):
                value = value.redacted()
            elif isinstance(value, Enum):
                value = value.value
            result[f.name] = value
        return result


def _csv(raw: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _bool(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError("expected a boolean")


def _log_format_is_json(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered not in ("json", "human", "text"):
        raise ValueError("expected 'json' or 'human'")
    return lowered == "json"


_ENV_FIELDS = {
    "QUEUES": ("queues", _csv),
    "DEFAULT_QUEUE": ("default_queue", str),
    "WORKER_ID": ("worker_id", str),
    "WORKER_COUNT": ("worker_count", int),
    "SHUTDOWN_GRACE": ("shutdown_grace_seconds", float),
    "LOCK_RENEWAL": ("lock_renewal_seconds", float),
    "RECEIVE_WAIT": ("receive_wait_seconds", float),
    "PUBLISH_RETRIES": ("publish_retry_count", int),
    "PUBLISH_RETRY_DELAY": ("publish_retry_delay_seconds", float),
    "TRANSPORT_FAILURE_CEILING": ("transport_failure_ceiling", int),
    "RETRY_BASE_DELAY": ("retry_base_delay_seconds", float),
    "RETRY_MAX_DELAY": ("retry_max_delay_seconds", float),
    "DEFAULT_MAX_ATTEMPTS": ("default_max_attempts", int),
    "HANDLER_MODULES": ("handler_modules", _csv),
    "LOG_LEVEL": ("log_level", str),
    "LOG_FORMAT": ("log_json", _log_format_is_json),
    "LOG_JSON": ("log_json", _bool),
    "HEALTH_PORT": ("health_port", int),
}


# Profile defaults per environment; env vars override these
PROFILES: Dict[Environment, Dict[str, Any]] = {
    Environment.DEVELOPMENT: {
        "handler_modules": ("handlers.examples",),
        "worker_count": 2,
        "shutdown_grace_seconds": 5.0,
        "retry_base_delay_seconds": 1.0,
        "retry_max_delay_seconds": 30.0,
        "log_level": "DEBUG",
        "log_json": False,
    },
    Environment.TEST: {
        "worker_count": 1,
        "shutdown_grace_seconds": 1.0,
        "receive_wait_seconds": 0.05,
        "publish_retry_delay_seconds": 0.0,
        "retry_base_delay_seconds": 0.0,
        "retry_max_delay_seconds": 0.0,
        "log_level": "DEBUG",
        "log_json": False,
        "health_port": 0,
    },
    Environment.STAGING: {
        "worker_count": 5,
        "log_json": True,
    },
    Environment.PRODUCTION: {
        "worker_count": 10,
        "log_json": True,
    },
}


__all__ = [
    "DEFAULT_QUEUE",
    "ENV_PREFIX",
    "Environment",
    "PROFILES",
    "Settings",
]
