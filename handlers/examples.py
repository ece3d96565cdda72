# ============================================================================
# EXAMPLE HANDLERS
# ============================================================================
# STATUS: Examples - Sample handler implementations
# PURPOSE: Demonstrate handler registration and implementation patterns
# CREATED: 14 OCT 2026
# ============================================================================
"""
Example Handlers

Sample implementations showing how to create handlers.
These can be used for testing and as templates for real handlers.

Load them in a worker with DISPATCH_HANDLER_MODULES=handlers.examples.
"""

import asyncio
import hashlib
import logging
import random
from typing import Any, Dict, List

from handlers.registry import (
    HandlerResult,
    current_job,
    register_handler,
)

logger = logging.getLogger(__name__)


# ============================================================================
# BASIC HANDLERS
# ============================================================================

@register_handler(
    "echo",
    description="Echoes its arguments back as output",
    retry=False,
)
async def echo_handler(*args: Any) -> HandlerResult:
    """Simple echo handler for testing."""
    job = current_job()
    logger.info(f"Echo handler called with args: {list(args)}")
    return HandlerResult.success_result(
        output={
            "echoed_args": list(args),
            "jid": job.jid if job else None,
        }
    )


@register_handler(
    "hello_world",
    description="Returns a hello world message",
)
async def hello_world_handler(name: str = "World") -> Dict[str, str]:
    return {"message": f"Hello, {name}!"}


@register_handler(
    "sleep",
    description="Sleeps for the given seconds, stopping early on shutdown",
)
async def sleep_handler(duration_seconds: float = 1.0) -> HandlerResult:
    """
    Sleep handler for testing delays and shutdown.

    Checks the shutdown flag between short naps and fails early so the
    job is retried elsewhere.
    """
    job = current_job()
    logger.info(f"Sleeping for {duration_seconds} seconds")

    remaining = float(duration_seconds)
    while remaining > 0:
        if job is not None and job.shutdown_requested:
            return HandlerResult.failure_result(
                f"Interrupted by shutdown with {remaining:.1f}s left"
            )
        nap = min(remaining, 0.5)
        await asyncio.sleep(nap)
        remaining -= nap

    return HandlerResult.success_result(output={"slept_for": duration_seconds})


@register_handler(
    "fail",
    description="Always fails (for testing error handling)",
    retry=3,
)
async def fail_handler(error_message: str = "Intentional failure for testing") -> HandlerResult:
    """
    Handler that always fails.

    Used for testing error handling and retry logic.
    """
    return HandlerResult.failure_result(error_message)


@register_handler(
    "flaky_echo",
    description="Echo handler with configurable failure rate (for testing retries)",
    retry=6,
)
async def flaky_echo_handler(failure_rate: float = 0.2, *args: Any) -> HandlerResult:
    """
    Echo handler that fails randomly at a configurable rate.

    With failure_rate=0.2 and 6 attempts, the probability of every attempt
    failing is 0.2^6 = 0.000064.
    """
    job = current_job()
    attempt = job.attempt if job else 0

    if random.random() < float(failure_rate):
        logger.warning(f"Flaky echo: random failure (rate={failure_rate}, attempt={attempt})")
        raise RuntimeError(f"Random failure (rate={failure_rate}, attempt={attempt})")

    return HandlerResult.success_result(
        output={"echoed_args": list(args), "attempt": attempt}
    )


# ============================================================================
# SYNC HANDLERS
# ============================================================================

@register_handler(
    "checksum",
    description="SHA-256 of each string argument (runs in a worker thread)",
)
def checksum_handler(*values: str) -> List[str]:
    return [hashlib.sha256(value.encode("utf-8")).hexdigest() for value in values]
