# ============================================================================
# SERVICE BUS TRANSPORT
# ============================================================================
# STATUS: Infrastructure - Azure Service Bus messaging
# PURPOSE: Transport implementation over the async Service Bus SDK
# CREATED: 13 OCT 2026
# ============================================================================
"""
Service Bus Transport

Transport implementation for Azure Service Bus queues.

Key Design Decisions:
    - One async client per process, senders cached per entity
    - Sender connection warmed up before caching (lazy AMQP links can drop
      the first message)
    - Dual auth: SAS credentials from the broker URL OR managed identity
    - Error categorization: permanent vs transient
    - Peek-lock receive with AutoLockRenewer for long-running handlers

Settlement mapping:
    ack                     -> complete
    requeue()               -> abandon (redelivered unchanged)
    requeue(envelope/delay) -> send copy (scheduled if delayed) + complete
    reject                  -> dead-letter
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional

from azure.identity.aio import DefaultAzureCredential
from azure.servicebus import ServiceBusMessage, ServiceBusReceivedMessage
from azure.servicebus.aio import AutoLockRenewer, ServiceBusClient, ServiceBusReceiver, ServiceBusSender
from azure.servicebus.exceptions import (
    MessageAlreadySettled,
    MessageLockLostError,
    MessageSizeExceededError,
    MessagingEntityNotFoundError,
    ServiceBusAuthenticationError,
    ServiceBusAuthorizationError,
    ServiceBusError,
    ServiceBusQuotaExceededError,
)

from core.config.settings import Settings
from core.errors import TransportError
from core.models.envelope import JobEnvelope
from infrastructure.transport import DeliveryHandle, ReceivedDelivery, Transport

logger = logging.getLogger(__name__)

# Retrying will not fix these
PERMANENT_ERRORS = (
    ServiceBusAuthenticationError,
    ServiceBusAuthorizationError,
    MessageSizeExceededError,
    MessagingEntityNotFoundError,
    ServiceBusQuotaExceededError,
)

# Dead-letter reason/description limits
MAX_REASON_LENGTH = 4096

_CLIENT_RETRY = dict(
    retry_total=5,
    retry_backoff_factor=0.5,
    retry_backoff_max=60,
    retry_mode="exponential",
)


def build_message(body: str, envelope: Optional[JobEnvelope] = None) -> ServiceBusMessage:
    """Wrap a body in a ServiceBusMessage with tracing properties."""
    message = ServiceBusMessage(body=body, content_type="application/json")
    if envelope is not None:
        # jid alone would collide with duplicate detection on retried copies
        message.message_id = f"{envelope.jid}-{envelope.attempt}"
        message.application_properties = {
            "jid": envelope.jid,
            "class": envelope.handler_name,
            "attempt": envelope.attempt,
        }
    return message


def decode_body(message: ServiceBusMessage) -> str:
    """
    Message body as text.

    Bytes that are not valid UTF-8 are replaced rather than raised, so the
    consumer sees a malformed body and rejects that one message.
    """
    try:
        return str(message)
    except UnicodeDecodeError:
        raw = message.body
        if not isinstance(raw, (bytes, bytearray)):
            raw = b"".join(raw)
        logger.warning(f"Message {message.message_id} body is not valid UTF-8")
        return bytes(raw).decode("utf-8", errors="replace")


class ServiceBusDeliveryHandle(DeliveryHandle):
    """Settles one peek-locked message."""

    def __init__(
        self,
        transport: "ServiceBusTransport",
        receiver: ServiceBusReceiver,
        message: ServiceBusReceivedMessage,
        queue: str,
        body: str,
    ):
        super().__init__(str(message.message_id or message.sequence_number))
        self._transport = transport
        self._receiver = receiver
        self._message = message
        self._queue = queue
        self._body = body

    async def _settle(self, operation: str, coro) -> None:
        try:
            await coro
        except (MessageLockLostError, MessageAlreadySettled) as e:
            # The broker will redeliver once the lock expires
            raise TransportError(
                f"Cannot {operation} message {self.delivery_id}: {type(e).__name__}",
                transient=False,
            ) from e
        except ServiceBusError as e:
            raise TransportError(
                f"Failed to {operation} message {self.delivery_id}: {e}"
            ) from e
        logger.debug(f"{operation} message {self.delivery_id} on {self._queue}")

    async def _ack(self) -> None:
        await self._settle("complete", self._receiver.complete_message(self._message))

    async def _requeue(self, envelope: Optional[JobEnvelope], delay_seconds: float) -> None:
        if envelope is None and delay_seconds <= 0:
            await self._settle("abandon", self._receiver.abandon_message(self._message))
            return

        body = envelope.to_wire() if envelope is not None else self._body
        await self._transport.send(self._queue, body, envelope, delay_seconds)
        await self._settle("complete", self._receiver.complete_message(self._message))

    async def _reject(self, reason: str, description: str) -> None:
        await self._settle(
            "dead-letter",
            self._receiver.dead_letter_message(
                self._message,
                reason=reason[:MAX_REASON_LENGTH],
                error_description=description[:MAX_REASON_LENGTH],
            ),
        )
        logger.warning(f"Dead-lettered message {self.delivery_id}: {reason}")


class ServiceBusTransport(Transport):
    """
    Async Service Bus transport.

    Usage:
        transport = ServiceBusTransport(settings)
        await transport.connect()

        await transport.publish("email", envelope)

        async for delivery in transport.subscribe("email"):
            ...
    """

    name = "service_bus"

    def __init__(self, settings: Settings):
        self.settings = settings
        self.broker = settings.broker_url

        self._client: Optional[ServiceBusClient] = None
        self._credential: Optional[DefaultAzureCredential] = None
        self._renewer: Optional[AutoLockRenewer] = None
        self._senders: Dict[str, ServiceBusSender] = {}
        self._receivers: List[ServiceBusReceiver] = []
        self._sender_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Establish async connection to Service Bus."""
        if self._client is not None:
            return

        if self.broker.uses_managed_identity:
            logger.info(
                f"Connecting to Service Bus with managed identity "
                f"(namespace={self.broker.fully_qualified_namespace})"
            )
            self._credential = DefaultAzureCredential()
            self._client = ServiceBusClient(
                fully_qualified_namespace=self.broker.fully_qualified_namespace,
                credential=self._credential,
                **_CLIENT_RETRY,
            )
        else:
            logger.info(f"Connecting to Service Bus at {self.broker.redacted()}")
            self._client = ServiceBusClient.from_connection_string(
                self.broker.connection_string(),
                **_CLIENT_RETRY,
            )

        self._renewer = AutoLockRenewer(
            max_lock_renewal_duration=self.settings.lock_renewal_seconds,
        )

    async def close(self) -> None:
        """Close receivers, senders, lock renewer and client."""
        for receiver in self._receivers:
            try:
                await receiver.close()
            except ServiceBusError as e:
                logger.warning(f"Error closing receiver: {e}")
        self._receivers.clear()

        for entity, sender in self._senders.items():
            try:
                await sender.close()
            except ServiceBusError as e:
                logger.warning(f"Error closing sender for {entity}: {e}")
        self._senders.clear()

        if self._renewer is not None:
            await self._renewer.close()
            self._renewer = None

        if self._client is not None:
            await self._client.close()
            self._client = None

        if self._credential is not None:
            await self._credential.close()
            self._credential = None

        logger.info("Service Bus transport closed")

    def _require_client(self) -> ServiceBusClient:
        if self._client is None:
            raise TransportError("Service Bus transport is not connected", transient=False)
        return self._client

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    async def _get_sender(self, entity: str) -> ServiceBusSender:
        """
        Get or create a sender for an entity.

        The SDK opens AMQP links lazily; entering the sender opens the link
        before it is cached.
        """
        async with self._sender_lock:
            sender = self._senders.get(entity)
            if sender is not None:
                return sender

            logger.debug(f"Creating new sender for entity: {entity}")
            sender = self._require_client().get_queue_sender(queue_name=entity)
            await sender.__aenter__()
            self._senders[entity] = sender
            return sender

    async def _drop_sender(self, entity: str) -> None:
        async with self._sender_lock:
            sender = self._senders.pop(entity, None)
        if sender is not None:
            try:
                await sender.close()
            except ServiceBusError as e:
                logger.debug(f"Ignoring close error for stale sender {entity}: {e}")

    async def send(
        self,
        queue: str,
        body: str,
        envelope: Optional[JobEnvelope] = None,
        delay_seconds: float = 0.0,
    ) -> str:
        """
        Send a body to a logical queue, scheduled when delay_seconds > 0.

        Returns:
            Message id

        Raises:
            TransportError: Permanent failure, or transient failures past
                publish_retry_count attempts
        """
        entity = self.broker.queue_name(queue)
        retry_count = self.settings.publish_retry_count

        for attempt in range(retry_count):
            message = build_message(body, envelope)
            try:
                sender = await self._get_sender(entity)
                if delay_seconds > 0:
                    enqueue_at = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
                    await sender.schedule_messages(message, enqueue_at)
                else:
                    await sender.send_messages(message)

                logger.info(
                    f"Message sent to {entity}: {message.message_id}",
                    extra={"queue": entity, "message_id": message.message_id,
                           "delay_seconds": delay_seconds},
                )
                return str(message.message_id)

            except PERMANENT_ERRORS as e:
                logger.error(f"Permanent Service Bus error for {entity}: {type(e).__name__}: {e}")
                raise TransportError(
                    f"Cannot publish to '{entity}': {type(e).__name__}: {e}",
                    transient=False,
                ) from e

            except ServiceBusError as e:
                logger.warning(
                    f"Transient error on attempt {attempt + 1}/{retry_count} "
                    f"publishing to {entity}: {type(e).__name__}"
                )
                await self._drop_sender(entity)
                if attempt == retry_count - 1:
                    raise TransportError(
                        f"Failed to publish to '{entity}' after {retry_count} attempts: {e}"
                    ) from e
                await asyncio.sleep(self.settings.publish_retry_delay_seconds * (2 ** attempt))

        raise TransportError(f"Failed to publish to '{entity}'")

    async def publish(self, queue: str, envelope: JobEnvelope) -> str:
        await self.connect()
        return await self.send(queue, envelope.to_wire(), envelope)

    # -------------------------------------------------------------------------
    # Receiving
    # -------------------------------------------------------------------------

    async def subscribe(self, queue: str) -> AsyncIterator[ReceivedDelivery]:
        await self.connect()
        entity = self.broker.queue_name(queue)
        wait = self.settings.receive_wait_seconds
        ceiling = self.settings.transport_failure_ceiling

        # Receivers belong to the transport so settling still works after
        # the iterator is closed
        receiver = self._require_client().get_queue_receiver(
            queue_name=entity,
            max_wait_time=wait,
        )
        self._receivers.append(receiver)
        logger.info(f"Subscribed to queue: {entity}")

        failures = 0
        while True:
            try:
                messages = await receiver.receive_messages(
                    max_message_count=1,
                    max_wait_time=wait,
                )
            except PERMANENT_ERRORS as e:
                raise TransportError(
                    f"Cannot receive from '{entity}': {type(e).__name__}: {e}",
                    transient=False,
                ) from e
            except ServiceBusError as e:
                failures += 1
                logger.warning(
                    f"Receive failure {failures}/{ceiling} on {entity}: {type(e).__name__}"
                )
                if failures >= ceiling:
                    raise TransportError(
                        f"Receive from '{entity}' failed {failures} times in a row: {e}"
                    ) from e
                await asyncio.sleep(
                    min(self.settings.publish_retry_delay_seconds * (2 ** (failures - 1)), 30.0)
                )
                continue

            failures = 0
            for message in messages:
                self._renewer.register(
                    receiver,
                    message,
                    max_lock_renewal_duration=self.settings.lock_renewal_seconds,
                )
                body = decode_body(message)
                yield ReceivedDelivery(
                    queue=queue,
                    body=body,
                    handle=ServiceBusDeliveryHandle(self, receiver, message, queue, body),
                    delivery_count=message.delivery_count or 0,
                )


__all__ = [
    "PERMANENT_ERRORS",
    "build_message",
    "decode_body",
    "ServiceBusDeliveryHandle",
    "ServiceBusTransport",
]
