# ============================================================================
# BROKER URL
# ============================================================================
# STATUS: Core - Broker addressing
# PURPOSE: Parse {scheme}://{credentials}@{host}:{port}/{vhost} broker URLs
# CREATED: 12 OCT 2026
# ============================================================================
"""
Broker URL

The broker is addressed by a single URL supplied via configuration:

    amqps://<key-name>:<key>@<namespace>.servicebus.windows.net:5671/<vhost>

- credentials: Service Bus shared access key name and key (URL-encoded).
  Omit them to authenticate with managed identity instead.
- vhost: optional prefix applied to every queue name, so several
  environments can share one namespace.
- localhost hosts are treated as the Service Bus emulator.
- memory://<name>/ addresses the in-process transport used by tests.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlsplit

from core.errors import ConfigurationError

SERVICE_BUS_SCHEMES = ("amqps", "amqp", "sb")
MEMORY_SCHEME = "memory"
DEFAULT_AMQPS_PORT = 5671
EMULATOR_HOSTS = ("localhost", "127.0.0.1", "::1")


@dataclass(frozen=True)
class BrokerURL:
    """Parsed, validated broker URL."""

    scheme: str
    host: str
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    vhost: str = ""

    @classmethod
    def parse(cls, url: str) -> "BrokerURL":
        """
        Parse a broker URL.

        Raises:
            ConfigurationError: On unknown scheme, missing host, bad port,
                or half-specified credentials
        """
        if not url or not url.strip():
            raise ConfigurationError("Broker URL is empty")

        parts = urlsplit(url.strip())
        scheme = parts.scheme.lower()
        if scheme not in SERVICE_BUS_SCHEMES + (MEMORY_SCHEME,):
            raise ConfigurationError(
                f"Unsupported broker scheme {parts.scheme!r} "
                f"(expected one of {', '.join(SERVICE_BUS_SCHEMES + (MEMORY_SCHEME,))})"
            )
        if not parts.hostname:
            if scheme != MEMORY_SCHEME:
                raise ConfigurationError("Broker URL has no host")
            return cls(scheme=scheme, host="local")

        try:
            port = parts.port
        except ValueError as e:
            raise ConfigurationError(f"Broker URL has an invalid port: {e}")

        username = unquote(parts.username) if parts.username else None
        password = unquote(parts.password) if parts.password else None
        if bool(username) != bool(password):
            raise ConfigurationError(
                "Broker credentials need both a key name and a key"
            )

        return cls(
            scheme=scheme,
            host=parts.hostname,
            port=port,
            username=username,
            password=password,
            vhost=parts.path.strip("/"),
        )

    @property
    def is_memory(self) -> bool:
        return self.scheme == MEMORY_SCHEME

    @property
    def uses_managed_identity(self) -> bool:
        """No credentials in the URL means managed identity."""
        return self.username is None

    @property
    def is_emulator(self) -> bool:
        return self.host in EMULATOR_HOSTS

    @property
    def fully_qualified_namespace(self) -> str:
        return self.host

    def connection_string(self) -> str:
        """Service Bus connection string for key-based auth."""
        if self.uses_managed_identity:
            raise ConfigurationError(
                "Broker URL has no credentials; use managed identity"
            )
        endpoint = self.host
        if self.port and self.port != DEFAULT_AMQPS_PORT:
            endpoint = f"{self.host}:{self.port}"

        parts = [
            f"Endpoint=sb://{endpoint}/",
            f"SharedAccessKeyName={self.username}",
            f"SharedAccessKey={self.password}",
        ]
        if self.is_emulator:
            parts.append("UseDevelopmentEmulator=true")
        return ";".join(parts) + ";"

    def queue_name(self, queue: str) -> str:
        """Physical entity name for a logical queue."""
        if self.vhost:
            return f"{self.vhost}/{queue}"
        return queue

    def redacted(self) -> str:
        """URL with the key masked, for logs."""
        credentials = ""
        if self.username:
            credentials = f"{self.username}:***@"
        port = f":{self.port}" if self.port else ""
        return f"{self.scheme}://{credentials}{self.host}{port}/{self.vhost}"

    def __str__(self) -> str:
        return self.redacted()


__all__ = [
    "BrokerURL",
    "SERVICE_BUS_SCHEMES",
    "MEMORY_SCHEME",
    "DEFAULT_AMQPS_PORT",
]
