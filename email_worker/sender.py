"""Confirmation email senders.

The consumer only depends on the ``ConfirmationSender`` protocol so tests can
swap in deterministic or fault-injecting fakes. The shipped implementation
simulates the external mail call with a random delay.
"""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Optional, Protocol

from email_worker.models import OrderTask


logger = logging.getLogger(__name__)


class ConfirmationSender(Protocol):
    """Send the confirmation email for one order.

    Returns on success and raises on failure. Must be cancellable while it
    is awaiting the external call.
    """

    async def send(self, task: OrderTask) -> None: ...


class SimulatedConfirmationSender:
    """Stand-in for the mail service: sleeps for a random 1–3 seconds.

    Example:
        >>> sender = SimulatedConfirmationSender(min_delay_s=0.0, max_delay_s=0.0)
        >>> await sender.send(OrderTask(id=1, email="a@b.com"))
    """

    def __init__(
        self,
        min_delay_s: float = 1.0,
        max_delay_s: float = 3.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        if min_delay_s < 0 or max_delay_s < min_delay_s:
            raise ValueError(f"invalid delay range [{min_delay_s}, {max_delay_s}]")
        self.min_delay_s = min_delay_s
        self.max_delay_s = max_delay_s
        self._rng = rng or random.Random()

    def next_delay(self) -> float:
        return self._rng.uniform(self.min_delay_s, self.max_delay_s)

    async def send(self, task: OrderTask) -> None:
        delay = self.next_delay()
        logger.debug("Simulating mail call for order #%s (%.2fs)", task.id, delay)
        await asyncio.sleep(delay)
