"""Shared constants for the email worker: queue binding, identities, outcomes.

Settlement outcomes (``worker_message_total{outcome=...}``):
- ``acknowledged``: Confirmation sent; delivery acked and removed from the queue.
- ``rejected``: Payload could not be decoded; delivery nacked without requeue.
- ``ignored``: Sender identity is not authorized; no ack/nack issued.
- ``transport_unavailable``: Channel or connection closed while processing; no ack/nack issued.
- ``failed``: Any other processing error; no ack/nack issued.
- ``cancelled``: Worker stopped while the send was outstanding; no ack/nack issued.
"""

QUEUE_NAME = "ordering.emailworker"

# Only messages published under this broker user are processed
AUTHORIZED_SENDER = "ops0"

PREFETCH_COUNT = 1
PREFETCH_SIZE = 0

OUTCOME_ACKNOWLEDGED = "acknowledged"
OUTCOME_REJECTED = "rejected"
OUTCOME_IGNORED = "ignored"
OUTCOME_TRANSPORT_UNAVAILABLE = "transport_unavailable"
OUTCOME_FAILED = "failed"
OUTCOME_CANCELLED = "cancelled"

TRACER_NAME = "email-worker"
