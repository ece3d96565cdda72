# ============================================================================
# PRODUCER DECLARATIONS
# ============================================================================
# STATUS: Examples - Proxies for handlers implemented by other services
# PURPOSE: Dispatch to remote handlers without importing their code
# CREATED: 14 OCT 2026
# ============================================================================
"""
Producer Declarations

Proxies for handlers that live in other services. Load with
DISPATCH_HANDLER_MODULES=handlers.producers in any process that dispatches
them; the consuming service registers the real handler.

    await dispatcher.dispatch("EmailWorkerProxy", ["a@example.org", "Welcome"])
    # -> {"class": "EmailWorker", "queue": "email", "retry": false, ...}
"""

from handlers.proxy import register_proxy
from handlers.registry import default_registry

register_proxy(
    default_registry,
    "EmailWorkerProxy",
    queue="email",
    retry=False,
    description="Transactional email, sent by the mailer service",
)

register_proxy(
    default_registry,
    "ReportExportProxy",
    queue="reports",
    retry=5,
    description="Report export, run by the reporting service",
)
