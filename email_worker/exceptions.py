"""Error taxonomy for the email worker."""


class EmailWorkerError(Exception):
    """Base exception for all email worker errors."""


class DecodeError(EmailWorkerError):
    """The message body is not a valid order task.

    Permanent: the same bytes can never decode on a later attempt, so the
    delivery is rejected without requeue. ``raw_body`` keeps the original
    payload for the error log.
    """

    def __init__(self, raw_body: bytes, reason: str) -> None:
        super().__init__(reason)
        self.raw_body = raw_body
        self.reason = reason


class TransportUnavailable(EmailWorkerError):
    """The broker channel or connection is closed.

    Settling on a dead channel would itself fail; the delivery is left to the
    broker's redelivery on reconnect.
    """


class AuthorizationMismatch(EmailWorkerError):
    """The delivery was published by a sender other than the authorized one.

    Recovered locally by the consumer's identity filter, which branches on the
    sender instead of raising; the delivery is left unsettled.
    """

    def __init__(self, sender_identity: str | None, expected: str) -> None:
        super().__init__(f"sender {sender_identity!r} is not {expected!r}")
        self.sender_identity = sender_identity
        self.expected = expected
