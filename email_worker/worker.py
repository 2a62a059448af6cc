"""
Order confirmation email worker process.

- Connects to RabbitMQ and passively binds the ``ordering.emailworker`` queue
- Hands each broker delivery to a bounded inbox (capacity 1, mirroring prefetch)
- A single consumer task settles deliveries one at a time
- Stops on SIGINT/SIGTERM: no new deliveries, in-flight work cancelled and left
  unsettled, then the channel and connection are closed
"""

from __future__ import annotations

import argparse
import asyncio
import signal
from typing import Optional, Sequence

from aio_pika.abc import AbstractIncomingMessage, AbstractQueue

from email_worker.config import Settings
from email_worker.consumer import OrderConsumer
from email_worker.metrics import QUEUE_BACKLOG_AT_START, start_metrics_server
from email_worker.models import Delivery
from email_worker.rabbit import bind_queue, connect, delivery_from_message
from email_worker.sender import ConfirmationSender, SimulatedConfirmationSender
from email_worker.tracing import start_tracing
from email_worker.utils.logging import get_logger, setup_logging


logger = get_logger(__name__)


class Worker:
    """Owns the broker connection and the consumer loop for its whole lifetime.

    Concurrency model:
    - AMQP QoS prefetch=1: the broker keeps at most one unsettled delivery here
    - The inbox is an ``asyncio.Queue(maxsize=1)`` fed by the aio_pika callback
    - ``OrderConsumer`` pulls and settles one delivery at a time

    Example:
    ```python
    os.environ["RABBIT_HOSTNAME"] = "rabbitmq"
    await Worker().run()
    ```
    """

    def __init__(self, settings: Optional[Settings] = None, sender: Optional[ConfirmationSender] = None):
        self.settings = settings or Settings()
        self.sender = sender or SimulatedConfirmationSender(
            self.settings.send_delay_min_s, self.settings.send_delay_max_s
        )
        self.consumer = OrderConsumer(
            self.sender,
            authorized_sender=self.settings.authorized_sender,
            payload_preview_chars=self.settings.payload_preview_chars,
        )
        self.inbox: asyncio.Queue[Delivery] = asyncio.Queue(maxsize=1)
        self._stopping = asyncio.Event()
        self._consumer_task: asyncio.Task[None] | None = None

    async def run(self) -> None:
        """Connect, bind the queue and consume until ``stop()`` is called.

        Connection and queue errors during startup propagate to the caller.
        """
        if self.settings.metrics_enabled:
            try:
                start_metrics_server(self.settings.metrics_port)
                logger.info("Metrics server listening on :%s /metrics", self.settings.metrics_port)
            except OSError:
                # Already started in this process
                pass
        start_tracing()

        queue_name = self.settings.queue_name
        connection = await connect(self.settings)
        async with connection:
            channel = await connection.channel()
            queue, message_count = await bind_queue(channel, queue_name)
            logger.info("Queue [%s] is waiting for messages.", queue_name)
            QUEUE_BACKLOG_AT_START.set(message_count)
            if message_count > 0:
                logger.info("\tDetected %s message(s).", message_count)

            self._consumer_task = asyncio.create_task(self.consumer.run(self.inbox))
            consumer_tag: Optional[str] = None
            try:
                consumer_tag = await queue.consume(self._on_message, no_ack=False)
                await self._stopping.wait()
            finally:
                await self._shutdown(queue, consumer_tag)
            if not channel.is_closed:
                await channel.close()
        logger.info("RabbitMQ connection is closed.")

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        """aio_pika callback: forward the delivery to the bounded inbox."""
        await self.inbox.put(delivery_from_message(message))

    async def _shutdown(self, queue: AbstractQueue, consumer_tag: Optional[str]) -> None:
        """Stop accepting deliveries, then cancel and await the consumer loop."""
        if consumer_tag is not None:
            try:
                await queue.cancel(consumer_tag)
            except Exception as exc:  # noqa: BLE001
                # Channel already gone; the broker drops the consumer with it
                logger.info("Consumer cancel skipped: %s", exc)
        task = self._consumer_task
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self._consumer_task = None

    def stop(self) -> None:
        """Signal the run loop to stop (used by signal handlers)."""
        logger.info("Stop requested.")
        self._stopping.set()


async def main(settings: Optional[Settings] = None) -> None:
    """Entrypoint for running the worker as a script."""
    worker = Worker(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    await worker.run()


def cli(argv: Optional[Sequence[str]] = None) -> None:
    """Console script: configure logging and run the worker until signalled."""
    settings = Settings()
    parser = argparse.ArgumentParser(description="Consume order confirmation tasks from RabbitMQ")
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--log-file", default=None, help="Also write logs to this file")
    args = parser.parse_args(argv)

    setup_logging(args.log_level, log_file=args.log_file)
    asyncio.run(main(settings))


if __name__ == "__main__":
    cli()
