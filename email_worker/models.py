"""Record types flowing through the consumer.

``OrderTask`` is the decoded payload and is validated with pydantic.
``Delivery`` is one broker delivery as the consumer sees it; it carries a
``Settler`` bound to the channel the delivery arrived on so the consumer can
settle it without holding a reference to the connection.
"""
from __future__ import annotations

import datetime as _dt
import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr


class OrderTask(BaseModel):
    """Order whose confirmation email should be sent."""
    # Producers may add fields; only id and email are read here
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: StrictInt = Field(gt=0)
    email: StrictStr


class Settlement(str, enum.Enum):
    """Terminal state of one delivery from this worker's point of view."""

    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    UNSETTLED = "unsettled"


class Settler(Protocol):
    """Acknowledgment handle for exactly one delivery.

    Implementations settle only the delivery they were created for
    (``multiple=False``).
    """

    @property
    def is_open(self) -> bool: ...

    async def ack(self) -> None: ...

    async def nack(self, requeue: bool = False) -> None: ...


@dataclass
class Delivery:
    """One message handed to the worker by the broker."""

    delivery_tag: int
    sender_identity: Optional[str]
    timestamp: Optional[float]
    message_id: Optional[str]
    body: bytes
    settler: Settler
    headers: dict[str, Any] = field(default_factory=dict)
    redelivered: bool = False

    def local_time(self) -> Optional[_dt.datetime]:
        """Return the producer timestamp as an aware local datetime, if present."""
        if self.timestamp is None:
            return None
        return _dt.datetime.fromtimestamp(self.timestamp).astimezone()

    def preview(self, limit: int) -> str:
        """Return the body as text, truncated to ``limit`` characters."""
        text = self.body.decode("utf-8", errors="replace")
        if limit > 0 and len(text) > limit:
            return text[:limit] + "..."
        return text
