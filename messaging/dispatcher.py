# ============================================================================
# JOB DISPATCHER
# ============================================================================
# STATUS: Core - Producer-side dispatch
# PURPOSE: Build envelopes from registry defaults and publish them
# CREATED: 14 OCT 2026
# ============================================================================
"""
Job Dispatcher

Producer entry point. Two paths:

- dispatch(name, args): the name must be registered (a handler or a proxy).
  Registered defaults are merged with the call options per key, unset keys
  fall back to settings, the entry's middleware chain rewrites the envelope
  and the result is published.
- push(handler_name, args): raw path, no registry involved. The name is
  published verbatim; useful for handlers no local code knows about.
"""

from typing import Any, Iterable, List, Optional, Sequence, Union

from core.config.settings import DEFAULT_QUEUE, Settings
from core.logging import ComponentType, get_logger
from core.models.envelope import DispatchOptions, JobEnvelope, RetryPolicy
from handlers.proxy import apply_middleware
from handlers.registry import HandlerRegistry, default_registry
from infrastructure.transport import Transport

logger = get_logger(__name__, ComponentType.PRODUCER)

RetryOption = Union[None, bool, int, RetryPolicy]


class Dispatcher:
    """Publishes job envelopes for registered handler names."""

    def __init__(
        self,
        transport: Transport,
        registry: Optional[HandlerRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self.transport = transport
        self.registry = registry if registry is not None else default_registry
        self.settings = settings

    @property
    def default_queue(self) -> str:
        return self.settings.default_queue if self.settings is not None else DEFAULT_QUEUE

    def build(
        self,
        name: str,
        args: Sequence[Any] = (),
        *,
        queue: Optional[str] = None,
        retry: RetryOption = None,
    ) -> JobEnvelope:
        """
        Build the envelope dispatch() would publish, without publishing.

        Raises:
            HandlerNotFoundError: If name is not registered
        """
        entry = self.registry.lookup(name)
        options = entry.defaults.merged(DispatchOptions.build(queue=queue, retry=retry))

        envelope = JobEnvelope(
            handler_name=name,
            queue=options.queue or self.default_queue,
            retry=options.retry if options.retry is not None else RetryPolicy(),
            args=tuple(args),
        )
        return apply_middleware(entry.middleware, envelope, entry.defaults)

    async def dispatch(
        self,
        name: str,
        args: Sequence[Any] = (),
        *,
        queue: Optional[str] = None,
        retry: RetryOption = None,
    ) -> JobEnvelope:
        """
        Dispatch a job for a registered handler or proxy name.

        Args:
            name: Registered handler or proxy name
            args: Positional, JSON-compatible handler arguments
            queue: Overrides the registered queue
            retry: Overrides the registered retry policy

        Returns:
            The published envelope

        Raises:
            HandlerNotFoundError: If name is not registered
            TransportError: If the broker rejected or never received it
        """
        envelope = self.build(name, args, queue=queue, retry=retry)
        await self._publish(envelope, via=name)
        return envelope

    async def dispatch_many(
        self,
        name: str,
        arg_lists: Iterable[Sequence[Any]],
        *,
        queue: Optional[str] = None,
        retry: RetryOption = None,
    ) -> List[JobEnvelope]:
        """Dispatch one job per argument list. Stops at the first failure."""
        envelopes = [self.build(name, args, queue=queue, retry=retry) for args in arg_lists]
        for envelope in envelopes:
            await self._publish(envelope, via=name)
        logger.info(f"Dispatched {len(envelopes)} {name} jobs")
        return envelopes

    async def push(
        self,
        handler_name: str,
        args: Sequence[Any] = (),
        *,
        queue: Optional[str] = None,
        retry: RetryOption = None,
    ) -> JobEnvelope:
        """
        Publish an envelope for any handler name, bypassing the registry.

        Raises:
            TransportError: If the broker rejected or never received it
        """
        envelope = JobEnvelope(
            handler_name=handler_name,
            queue=queue or self.default_queue,
            retry=RetryPolicy.coerce(retry) if retry is not None else RetryPolicy(),
            args=tuple(args),
        )
        await self._publish(envelope, via=None)
        return envelope

    async def _publish(self, envelope: JobEnvelope, via: Optional[str]) -> None:
        message_id = await self.transport.publish(envelope.queue, envelope)
        alias = f" (via {via})" if via and via != envelope.handler_name else ""
        logger.info(
            f"Dispatched {envelope.handler_name}{alias} to {envelope.queue}: jid={envelope.jid}",
            extra={
                "jid": envelope.jid,
                "handler": envelope.handler_name,
                "queue": envelope.queue,
                "message_id": message_id,
            },
        )


__all__ = [
    "Dispatcher",
]
