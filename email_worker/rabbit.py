"""RabbitMQ helpers for the worker's connection, queue binding and settlement.

This module wraps ``aio_pika`` to provide:
- A robust connection with bounded retry/backoff at startup
- Passive binding to the pre-existing work queue with prefetch=1
- Conversion of incoming messages into transport-agnostic ``Delivery`` records
- A per-delivery ``Settler`` that acks/nacks through the originating channel

Topology provisioning is not done here: the queue must already exist.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple
from urllib.parse import quote

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue, AbstractRobustConnection
from aio_pika.exceptions import ChannelInvalidStateError

from email_worker.config import Settings
from email_worker.constants import PREFETCH_COUNT, PREFETCH_SIZE
from email_worker.models import Delivery


logger = logging.getLogger(__name__)


def build_amqp_url(settings: Settings) -> str:
    """Return the AMQP URL for the configured host and fixed port/credentials.

    Example:
        >>> build_amqp_url(Settings(rabbit_hostname="mq"))
        'amqp://ops1:ops1@mq:5672/%2F'
    """
    user = quote(settings.rabbitmq_user, safe="")
    password = quote(settings.rabbitmq_password, safe="")
    return f"amqp://{user}:{password}@{settings.rabbit_hostname}:{settings.rabbitmq_port}/%2F"


async def connect(settings: Optional[Settings] = None) -> AbstractRobustConnection:
    """Create a robust AMQP connection with bounded retry/backoff.

    Why:
    - The broker may come up after the worker in docker-compose/CI; a bounded
      retry loop avoids crash-looping on startup, but the worker still fails
      if the broker never becomes reachable.

    Settings used:
    - ``connect_attempts`` (``RABBITMQ_CONNECT_ATTEMPTS``, default: 12)
    - ``connect_base_delay_ms`` (``RABBITMQ_CONNECT_BASE_DELAY_MS``, default: 500)
    - ``connect_max_delay_ms`` (``RABBITMQ_CONNECT_MAX_DELAY_MS``, default: 3000)

    Example:
        >>> conn = await connect()
        >>> async with conn:
        ...     channel = await conn.channel()
    """
    settings = settings or Settings()
    url = build_amqp_url(settings)
    max_attempts = max(1, settings.connect_attempts)
    delay_ms = settings.connect_base_delay_ms

    last_exc: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await aio_pika.connect_robust(url)
        except Exception as exc:  # noqa: BLE001
            last_exc = exc
            if attempt == max_attempts:
                break
            logger.warning(
                "RabbitMQ at %s:%s not reachable (attempt %d/%d): %s",
                settings.rabbit_hostname,
                settings.rabbitmq_port,
                attempt,
                max_attempts,
                exc,
            )
            await asyncio.sleep(delay_ms / 1000.0)
            delay_ms = min(int(delay_ms * 2), settings.connect_max_delay_ms)
    assert last_exc is not None
    raise last_exc


async def bind_queue(channel: AbstractChannel, queue_name: str) -> Tuple[AbstractQueue, int]:
    """Apply per-consumer QoS and passively declare ``queue_name``.

    Returns the queue and the number of ready messages reported by the
    broker. Raises ``aio_pika.exceptions.ChannelNotFoundEntity`` if the queue
    does not exist; it is never created here.
    """
    await channel.set_qos(prefetch_count=PREFETCH_COUNT, prefetch_size=PREFETCH_SIZE, global_=False)
    queue = await channel.declare_queue(queue_name, passive=True)
    declaration = queue.declaration_result
    message_count = int(getattr(declaration, "message_count", 0) or 0)
    return queue, message_count


class IncomingMessageSettler:
    """``Settler`` for a single aio_pika incoming message.

    Acks and nacks go to the channel the message was delivered on, so a
    delivery tag is never replayed on a channel reopened after a reconnect.
    """

    def __init__(self, message: AbstractIncomingMessage) -> None:
        self._message = message

    @property
    def is_open(self) -> bool:
        try:
            channel = self._message.channel
        except ChannelInvalidStateError:
            return False
        return not channel.is_closed

    async def ack(self) -> None:
        await self._message.ack(multiple=False)

    async def nack(self, requeue: bool = False) -> None:
        await self._message.nack(multiple=False, requeue=requeue)


def delivery_from_message(message: AbstractIncomingMessage) -> Delivery:
    """Convert an aio_pika incoming message into a ``Delivery``."""
    timestamp = message.timestamp.timestamp() if message.timestamp is not None else None
    return Delivery(
        delivery_tag=int(message.delivery_tag or 0),
        sender_identity=message.user_id,
        timestamp=timestamp,
        message_id=message.message_id,
        body=bytes(message.body),
        settler=IncomingMessageSettler(message),
        headers=dict(message.headers or {}),
        redelivered=bool(message.redelivered),
    )
