"""OpenTelemetry tracing helpers for publishers and consumers.

Spans are exported to the console once ``start_tracing`` is called; without
it the global no-op provider is used and the helpers cost almost nothing.
W3C trace context travels in AMQP headers (``traceparent``) so a consume
span links back to the publish span that produced the message.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.propagate import get_global_textmap, inject, set_global_textmap
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.trace import Tracer
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator


TRACER_NAME = "ecommerce-messaging"


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


def inject_headers(headers: Mapping[str, Any] | None = None) -> Dict[str, Any]:
    """Return a copy of ``headers`` with the current trace context injected."""
    carrier: Dict[str, Any] = {} if headers is None else dict(headers)
    inject(carrier)
    return carrier


def extract_context_from_headers(headers: Mapping[str, Any] | None) -> Context:
    """Return a context object extracted from AMQP headers.

    Only string-valued headers are considered; AMQP tables such as
    ``x-death`` are skipped.
    """
    carrier: Dict[str, str] = {}
    if headers:
        for k, v in headers.items():
            if isinstance(v, (str, bytes)):
                carrier[str(k)] = v.decode("utf-8", errors="replace") if isinstance(v, bytes) else v
    return get_global_textmap().extract(carrier)
