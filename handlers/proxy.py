# ============================================================================
# DISPATCH PROXY
# ============================================================================
# STATUS: Core - Producer-side handler aliases
# PURPOSE: Dispatch under a real handler name without implementing it
# CREATED: 13 OCT 2026
# ============================================================================
"""
Dispatch Proxy

A producer declares "I send work named EmailWorkerProxy with these
defaults, but the real target is EmailWorker" without importing or
implementing EmailWorker.

Design:
- The naming convention is a value (StripSuffix("Proxy")), not string
  slicing scattered through dispatch code
- The target name is derived and validated once, at registration
- Envelope rewrites go through an explicit DispatchMiddleware chain; the
  rename is the first link

Usage:
    register_proxy(registry, "EmailWorkerProxy", queue="email", retry=False)

    await dispatcher.dispatch("EmailWorkerProxy", ["a@example.org", "Hi"])
    # publishes {"class": "EmailWorker", "queue": "email", "retry": false, ...}
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence, Union

from core.errors import ConfigurationError, InvalidProxyMappingError
from core.models.envelope import DispatchOptions, JobEnvelope, RetryPolicy
from handlers.registry import HandlerRegistry, RegistryEntry, is_valid_handler_name

# Pure function: proxy name -> real handler name
NameDerivation = Callable[[str], str]


# ============================================================================
# NAME DERIVATION
# ============================================================================

@dataclass(frozen=True)
class StripSuffix:
    """Derive the target name by removing a fixed literal suffix."""
    suffix: str = "Proxy"

    def __post_init__(self) -> None:
        if not self.suffix:
            raise ConfigurationError("StripSuffix needs a non-empty suffix")

    def __call__(self, name: str) -> str:
        if name.endswith(self.suffix):
            return name[: -len(self.suffix)]
        return name


def strip_suffix(suffix: str) -> StripSuffix:
    """Derivation that removes `suffix` from the end of a proxy name."""
    return StripSuffix(suffix)


strip_proxy_suffix = strip_suffix("Proxy")


def derive_target_name(
    proxy_name: str,
    derive: NameDerivation = strip_proxy_suffix,
) -> str:
    """
    Apply `derive` to `proxy_name` and validate the result.

    Raises:
        InvalidProxyMappingError: If the derived name is empty, malformed,
            or identical to the proxy name
    """
    if not is_valid_handler_name(proxy_name):
        raise InvalidProxyMappingError(proxy_name, None, "proxy name is malformed")

    try:
        target = derive(proxy_name)
    except Exception as e:
        raise InvalidProxyMappingError(
            proxy_name, None, f"name derivation failed: {e}"
        ) from e

    if not isinstance(target, str) or not target:
        raise InvalidProxyMappingError(proxy_name, target or None, "derived name is empty")
    if not is_valid_handler_name(target):
        raise InvalidProxyMappingError(proxy_name, target, "derived name is malformed")
    if target == proxy_name:
        raise InvalidProxyMappingError(
            proxy_name, target, "derived name equals the proxy name"
        )
    return target


# ============================================================================
# MIDDLEWARE
# ============================================================================

class DispatchMiddleware(ABC):
    """
    Envelope rewrite applied at dispatch time.

    Chains are fixed at registration and applied in order. Implementations
    must return a new envelope (envelopes are immutable).
    """

    @abstractmethod
    def transform(
        self,
        envelope: JobEnvelope,
        declared_defaults: DispatchOptions,
    ) -> JobEnvelope:
        ...


class RenameHandlerMiddleware(DispatchMiddleware):
    """Write the real handler name into the envelope."""

    def __init__(self, target_name: str):
        self.target_name = target_name

    def transform(
        self,
        envelope: JobEnvelope,
        declared_defaults: DispatchOptions,
    ) -> JobEnvelope:
        return envelope.renamed(self.target_name)

    def __repr__(self) -> str:
        return f"RenameHandlerMiddleware({self.target_name!r})"


def apply_middleware(
    chain: Sequence[DispatchMiddleware],
    envelope: JobEnvelope,
    declared_defaults: DispatchOptions,
) -> JobEnvelope:
    """Run `envelope` through `chain` in order."""
    for middleware in chain:
        result = middleware.transform(envelope, declared_defaults)
        if not isinstance(result, JobEnvelope):
            raise TypeError(
                f"{type(middleware).__name__}.transform returned "
                f"{type(result).__name__}, expected JobEnvelope"
            )
        envelope = result
    return envelope


# ============================================================================
# REGISTRATION
# ============================================================================

def register_proxy(
    registry: HandlerRegistry,
    proxy_name: str,
    *,
    derive: NameDerivation = strip_proxy_suffix,
    queue: Optional[str] = None,
    retry: Union[None, bool, int, RetryPolicy] = None,
    middleware: Iterable[DispatchMiddleware] = (),
    description: str = "",
) -> RegistryEntry:
    """
    Register a producer-side proxy for a handler implemented elsewhere.

    Args:
        registry: Registry to add the proxy to
        proxy_name: Name producers dispatch with (e.g. "EmailWorkerProxy")
        derive: Pure function producing the real handler name
        queue: Default queue for this proxy
        retry: Default retry policy for this proxy
        middleware: Extra middleware, applied after the rename
        description: Human-readable description

    Raises:
        InvalidProxyMappingError: If the derived name is unusable or collides
            with a registered handler
        DuplicateRegistrationError: If proxy_name is already registered
    """
    target_name = derive_target_name(proxy_name, derive)

    entry = RegistryEntry(
        name=proxy_name,
        defaults=DispatchOptions.build(queue=queue, retry=retry),
        target_name=target_name,
        middleware=(RenameHandlerMiddleware(target_name),) + tuple(middleware),
        description=description or f"Proxy for {target_name}",
    )
    return registry.add(entry)


__all__ = [
    "NameDerivation",
    "StripSuffix",
    "strip_suffix",
    "strip_proxy_suffix",
    "derive_target_name",
    "DispatchMiddleware",
    "RenameHandlerMiddleware",
    "apply_middleware",
    "register_proxy",
]
