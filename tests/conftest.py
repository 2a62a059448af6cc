from typing import Optional

import pytest

from email_worker.models import Delivery
from fakes import FakeChannel, order_body


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def make_delivery(channel: FakeChannel):
    def _make(
        body: Optional[bytes] = None,
        delivery_tag: int = 1,
        sender: Optional[str] = "ops0",
        on: Optional[FakeChannel] = None,
        message_id: Optional[str] = "msg-1",
        timestamp: Optional[float] = 1_700_000_000.0,
    ) -> Delivery:
        target = on or channel
        return Delivery(
            delivery_tag=delivery_tag,
            sender_identity=sender,
            timestamp=timestamp,
            message_id=message_id,
            body=body if body is not None else order_body(),
            settler=target.settler_for(delivery_tag),
        )

    return _make
