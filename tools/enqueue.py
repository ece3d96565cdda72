#!/usr/bin/env python3
# ============================================================================
# CLI ENQUEUE TOOL
# ============================================================================
# STATUS: Tool - Dispatch jobs from the command line
# PURPOSE: Publish a job envelope without writing producer code
# CREATED: 14 OCT 2026
# ============================================================================
"""
Dispatch a job to a worker queue.

Two modes:
1. Registered (default): HANDLER must be registered by a loaded module
   (a consumer handler or a producer proxy); registry defaults apply
2. Raw (--raw): HANDLER is published verbatim, no registry involved

Usage:
    # Through a proxy declared in handlers.producers
    python tools/enqueue.py EmailWorkerProxy '["a@example.org", "Welcome"]' -m handlers.producers

    # Example handler with an explicit queue
    python tools/enqueue.py echo '["hello", 3]' --queue default

    # Handler no local module knows about
    python tools/enqueue.py Billing::InvoiceWorker '[42]' --raw --queue billing --retry 5

Requires:
    DISPATCH_BROKER_URL env var (see worker.main for the rest)
"""

import argparse
import asyncio
import json
import os
import sys
from typing import List, Optional, Union

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config.settings import Settings
from core.errors import DispatchError
from core.logging import configure_logging
from core.models.envelope import JobEnvelope
from handlers.registry import default_registry
from infrastructure.factory import create_transport
from messaging.dispatcher import Dispatcher
from worker.main import load_handlers


def parse_retry(value: str) -> Union[bool, int]:
    """argparse type for --retry: true, false or a max attempt count."""
    lowered = value.strip().lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    try:
        attempts = int(lowered)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected true, false or an integer, got {value!r}")
    if attempts < 0:
        raise argparse.ArgumentTypeError("retry count must be >= 0")
    return attempts


def parse_args_json(value: str) -> list:
    """argparse type for ARGS_JSON: must decode to a JSON array."""
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"invalid JSON: {e}")
    if not isinstance(decoded, list):
        raise argparse.ArgumentTypeError("handler arguments must be a JSON array")
    return decoded


async def enqueue(
    settings: Settings,
    handler: str,
    args: list,
    queue: Optional[str] = None,
    retry: Union[None, bool, int] = None,
    raw: bool = False,
) -> JobEnvelope:
    """Publish one job and return the envelope that was sent."""
    async with create_transport(settings) as transport:
        dispatcher = Dispatcher(transport, default_registry, settings)
        if raw:
            return await dispatcher.push(handler, args, queue=queue, retry=retry)
        return await dispatcher.dispatch(handler, args, queue=queue, retry=retry)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dispatch a job to a worker queue",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s EmailWorkerProxy '["a@example.org", "Welcome"]' -m handlers.producers
  %(prog)s echo '["hello", 3]' --queue default
  %(prog)s Billing::InvoiceWorker '[42]' --raw --queue billing --retry 5
        """,
    )
    parser.add_argument("handler", help="Handler or proxy name")
    parser.add_argument("args", type=parse_args_json, help="JSON array of handler arguments")
    parser.add_argument("--queue", "-q", help="Override the queue")
    parser.add_argument("--retry", "-r", type=parse_retry, help="true, false or max attempts")
    parser.add_argument(
        "--raw",
        action="store_true",
        help="Publish the handler name verbatim, bypassing the registry",
    )
    parser.add_argument(
        "--module", "-m",
        action="append",
        default=[],
        dest="modules",
        help="Extra module registering handlers or proxies (repeatable)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at DEBUG")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level="DEBUG" if args.verbose else "WARNING")

    try:
        settings = Settings.from_env()
        if not args.raw:
            load_handlers([*settings.handler_modules, *args.modules])
        envelope = asyncio.run(
            enqueue(settings, args.handler, args.args, args.queue, args.retry, args.raw)
        )
    except DispatchError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print("Dispatched:")
    print(json.dumps(envelope.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
