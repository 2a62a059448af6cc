"""
Order confirmation consumer: the per-delivery acknowledgment state machine.

- Ignores deliveries from any sender other than the authorized producer
- Decodes the body into an ``OrderTask``; malformed payloads are rejected without requeue
- Sends the confirmation through an injected ``ConfirmationSender``
- Acks on success; leaves the delivery unsettled on transport or unknown failures
- Holds a single processing slot so at most one delivery is in flight
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Awaitable

from aio_pika.exceptions import AMQPChannelError, AMQPConnectionError, ChannelInvalidStateError
from opentelemetry import context  # type: ignore

from email_worker.constants import (
    AUTHORIZED_SENDER,
    OUTCOME_ACKNOWLEDGED,
    OUTCOME_CANCELLED,
    OUTCOME_FAILED,
    OUTCOME_IGNORED,
    OUTCOME_REJECTED,
    OUTCOME_TRANSPORT_UNAVAILABLE,
    TRACER_NAME,
)
from email_worker.exceptions import DecodeError, TransportUnavailable
from email_worker.metrics import WORKER_IN_FLIGHT, WORKER_MESSAGE_TOTAL, WORKER_PROCESS_LATENCY_SECONDS
from email_worker.models import Delivery, OrderTask, Settlement
from email_worker.sender import ConfirmationSender
from email_worker.tracing import extract_context_from_headers, get_tracer
from email_worker.validation import decode_task


logger = logging.getLogger(__name__)


class FailureClass(str, enum.Enum):
    TRANSPORT = "transport"
    UNCLASSIFIED = "unclassified"


# Errors meaning the channel or connection is gone; ack/nack would fail too
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    TransportUnavailable,
    AMQPConnectionError,
    AMQPChannelError,
    ChannelInvalidStateError,
    ConnectionError,
)


def classify_failure(exc: BaseException) -> FailureClass:
    """Map a processing exception to its failure class.

    Both classes leave the delivery unsettled; the class only decides how the
    failure is reported.

    Example:
        >>> classify_failure(TransportUnavailable("closed"))
        <FailureClass.TRANSPORT: 'transport'>
        >>> classify_failure(RuntimeError("boom"))
        <FailureClass.UNCLASSIFIED: 'unclassified'>
    """
    if isinstance(exc, TRANSPORT_ERRORS):
        return FailureClass.TRANSPORT
    return FailureClass.UNCLASSIFIED


class OrderConsumer:
    """Drives each delivery through filter -> decode -> send -> settle.

    Flow control:
    - The broker is configured with prefetch=1, so it never hands over a
      second delivery while one is unsettled.
    - The consumer additionally holds a capacity-1 semaphore from filter to
      settlement, so direct concurrent calls to ``on_delivery`` are serialized
      as well.

    Settlement table:
    - Unauthorized sender -> unsettled (ignored)
    - Malformed payload -> nack, requeue=False
    - Transport unavailable -> unsettled
    - Any other send failure -> unsettled
    - Success -> ack

    Example:
    ```python
    consumer = OrderConsumer(SimulatedConfirmationSender())
    inbox: asyncio.Queue[Delivery] = asyncio.Queue(maxsize=1)
    task = asyncio.create_task(consumer.run(inbox))
    ```
    """

    def __init__(
        self,
        sender: ConfirmationSender,
        authorized_sender: str = AUTHORIZED_SENDER,
        payload_preview_chars: int = 512,
    ) -> None:
        self.sender = sender
        self.authorized_sender = authorized_sender
        self.payload_preview_chars = payload_preview_chars
        self._slot = asyncio.Semaphore(1)
        self._tracer = get_tracer(TRACER_NAME)

    async def run(self, inbox: "asyncio.Queue[Delivery]") -> None:
        """Pull deliveries from ``inbox`` one at a time until cancelled."""
        while True:
            delivery = await inbox.get()
            try:
                await self.on_delivery(delivery)
            finally:
                inbox.task_done()

    async def on_delivery(self, delivery: Delivery) -> Settlement:
        """Handle one delivery and return how it was settled.

        Never raises for steady-state failures; only cancellation propagates.
        """
        async with self._slot:
            WORKER_IN_FLIGHT.inc()
            start_ts = time.perf_counter()
            try:
                settlement, outcome = await self._handle(delivery)
            except asyncio.CancelledError:
                WORKER_MESSAGE_TOTAL.labels(outcome=OUTCOME_CANCELLED).inc()
                raise
            finally:
                WORKER_IN_FLIGHT.dec()
                WORKER_PROCESS_LATENCY_SECONDS.observe(time.perf_counter() - start_ts)
        WORKER_MESSAGE_TOTAL.labels(outcome=outcome).inc()
        return settlement

    async def _handle(self, delivery: Delivery) -> tuple[Settlement, str]:
        if delivery.sender_identity != self.authorized_sender:
            logger.info("\tIgnored a message sent by [%s].", delivery.sender_identity)
            return Settlement.UNSETTLED, OUTCOME_IGNORED

        local_time = delivery.local_time()
        logger.info(
            "%s ID=[%s] tag=%s%s",
            local_time.isoformat() if local_time else "-",
            delivery.message_id,
            delivery.delivery_tag,
            " (redelivered)" if delivery.redelivered else "",
        )
        logger.info("Processing msg: '%s'.", delivery.preview(self.payload_preview_chars))

        try:
            task = decode_task(delivery.body)
        except DecodeError as exc:
            logger.error("JSON Parse Error: '%s'.", exc.raw_body.decode("utf-8", errors="replace"))
            return await self._reject(delivery)

        try:
            await self._send(delivery, task)
        except asyncio.CancelledError:
            logger.info(
                "Stopped while sending order #%s; delivery %s left unsettled.",
                task.id,
                delivery.delivery_tag,
            )
            raise
        except Exception as exc:  # noqa: BLE001
            return self._unsettled(task, exc)
        logger.info("Order #%s confirmation email sent.", task.id)

        try:
            if not delivery.settler.is_open:
                raise TransportUnavailable("channel closed before acknowledgment")
            await self._settle(delivery, delivery.settler.ack())
        except asyncio.CancelledError:
            logger.info(
                "Stopped while acknowledging order #%s; delivery %s settlement attempt finished first.",
                task.id,
                delivery.delivery_tag,
            )
            raise
        except Exception as exc:  # noqa: BLE001
            return self._unsettled(task, exc)
        return Settlement.ACKNOWLEDGED, OUTCOME_ACKNOWLEDGED

    def _unsettled(self, task: OrderTask, exc: Exception) -> tuple[Settlement, str]:
        if classify_failure(exc) is FailureClass.TRANSPORT:
            logger.info("RabbitMQ is closed!")
            return Settlement.UNSETTLED, OUTCOME_TRANSPORT_UNAVAILABLE
        logger.exception("Order #%s failed: %s", task.id, exc)
        return Settlement.UNSETTLED, OUTCOME_FAILED

    async def _settle(self, delivery: Delivery, settle_op: Awaitable[None]) -> None:
        """Run an ack/nack to completion even when the consumer is cancelled meanwhile.

        Only the send is interruptible; a settlement already on the wire is
        awaited before the cancellation is re-raised.
        """
        pending = asyncio.ensure_future(settle_op)
        try:
            await asyncio.shield(pending)
        except asyncio.CancelledError:
            results = await asyncio.gather(pending, return_exceptions=True)
            if isinstance(results[0], BaseException):
                logger.info("Settlement of delivery %s failed during shutdown: %s", delivery.delivery_tag, results[0])
            raise

    async def _reject(self, delivery: Delivery) -> tuple[Settlement, str]:
        """Permanently reject a malformed delivery, if the channel still allows it."""
        if not delivery.settler.is_open:
            logger.info("RabbitMQ is closed!")
            return Settlement.UNSETTLED, OUTCOME_TRANSPORT_UNAVAILABLE
        try:
            await self._settle(delivery, delivery.settler.nack(requeue=False))
        except TRANSPORT_ERRORS:
            logger.info("RabbitMQ is closed!")
            return Settlement.UNSETTLED, OUTCOME_TRANSPORT_UNAVAILABLE
        return Settlement.REJECTED, OUTCOME_REJECTED

    async def _send(self, delivery: Delivery, task: OrderTask) -> None:
        logger.info("Sending order #%s confirmation email to [%s].", task.id, task.email)
        # Continue the producer's trace when it propagated one in the headers
        token = context.attach(extract_context_from_headers(delivery.headers))
        try:
            with self._tracer.start_as_current_span("send_confirmation") as span:
                span.set_attribute("order_id", task.id)
                span.set_attribute("delivery_tag", delivery.delivery_tag)
                if delivery.message_id:
                    span.set_attribute("message_id", delivery.message_id)
                await self.sender.send(task)
        finally:
            context.detach(token)

