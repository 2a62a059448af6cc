"""OpenTelemetry tracing helpers for the worker.

Spans are exported to the console. Producers that propagate W3C trace
context in AMQP headers get the worker's ``send_confirmation`` span attached
to their trace.
"""

from __future__ import annotations

from typing import Dict, Mapping, Any

from opentelemetry import trace  # type: ignore
from opentelemetry.sdk.resources import Resource  # type: ignore
from opentelemetry.sdk.trace import TracerProvider  # type: ignore
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor  # type: ignore
from opentelemetry.trace import Tracer  # type: ignore
from opentelemetry.propagate import get_global_textmap, set_global_textmap  # type: ignore
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator  # type: ignore

from email_worker.constants import TRACER_NAME


def start_tracing(service_name: str = TRACER_NAME) -> Tracer:
    """Initialize a TracerProvider with a console exporter."""
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)

    # Ensure W3C tracecontext propagator is used for headers
    set_global_textmap(TraceContextTextMapPropagator())

    return trace.get_tracer(service_name)


def get_tracer(service_name: str = TRACER_NAME) -> Tracer:
    return trace.get_tracer(service_name)


def extract_context_from_headers(headers: Mapping[str, Any] | None):
    """Return a context object extracted from AMQP headers.

    Header values arrive as bytes or str depending on the producer; the
    propagator needs str.
    """
    carrier: Dict[str, str] = {}
    if headers:
        for k, v in headers.items():
            if isinstance(v, bytes):
                carrier[str(k)] = v.decode("utf-8", errors="replace")
            else:
                carrier[str(k)] = v if isinstance(v, str) else str(v)
    return get_global_textmap().extract(carrier)
