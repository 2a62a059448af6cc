"""Order confirmation email worker.

Modules include configuration, the task decoder, the consumer state machine,
RabbitMQ helpers, the simulated confirmation sender, metrics and tracing.
"""
