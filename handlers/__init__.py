# ============================================================================
# HANDLERS MODULE
# ============================================================================
# STATUS: Core - Handler registration and lookup
# PURPOSE: Register handlers and producer-side proxies
# CREATED: 12 OCT 2026
# ============================================================================
"""
Handler Registry

Provides a decorator-based registration system for job handlers, and
proxies for handlers implemented by other services.

Usage:
    from handlers import register_handler, register_proxy, default_registry

    @register_handler("send_receipt", queue="billing", retry=5)
    async def send_receipt(order_id: int) -> None:
        ...

    register_proxy(default_registry, "EmailWorkerProxy", queue="email", retry=False)

Handler modules are not imported here; workers load them from
DISPATCH_HANDLER_MODULES.
"""

from handlers.registry import (
    HandlerFunc,
    HandlerRegistry,
    HandlerResult,
    JobContext,
    RegistryEntry,
    current_job,
    default_registry,
    is_valid_handler_name,
    register_handler,
)
from handlers.proxy import (
    DispatchMiddleware,
    RenameHandlerMiddleware,
    StripSuffix,
    apply_middleware,
    derive_target_name,
    register_proxy,
    strip_proxy_suffix,
    strip_suffix,
)

__all__ = [
    # Registry
    "HandlerFunc",
    "HandlerRegistry",
    "HandlerResult",
    "JobContext",
    "RegistryEntry",
    "current_job",
    "default_registry",
    "is_valid_handler_name",
    "register_handler",
    # Proxies
    "DispatchMiddleware",
    "RenameHandlerMiddleware",
    "StripSuffix",
    "apply_middleware",
    "derive_target_name",
    "register_proxy",
    "strip_proxy_suffix",
    "strip_suffix",
]
