"""OpenTelemetry tracing for queue publishes.

Every publish runs inside a PRODUCER span carrying the RabbitMQ messaging
attributes, and the active context travels to consumers in the AMQP
headers. Spans go to the console once `start_tracing` is called; without
it the global no-op provider is used.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from opentelemetry import trace  # type: ignore
from opentelemetry.propagate import inject, set_global_textmap  # type: ignore
from opentelemetry.sdk.resources import Resource  # type: ignore
from opentelemetry.sdk.trace import TracerProvider  # type: ignore
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor  # type: ignore
from opentelemetry.trace import Span, SpanKind, Tracer  # type: ignore
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator  # type: ignore

from otr_queue.config import Settings


MESSAGING_SYSTEM = "rabbitmq"


def start_tracing(service_name: Optional[str] = None, settings: Optional[Settings] = None) -> Tracer:
    """Install a console-exporting TracerProvider and the W3C propagator.

    The service name defaults to ``Settings.otel_service_name``
    (``OTEL_SERVICE_NAME``), so the producer and the topology script report
    under the deployment's name unless a script overrides it.
    """
    if service_name is None:
        service_name = (settings or Settings()).otel_service_name
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())
    return trace.get_tracer(service_name)


def get_tracer(name: str = "otr_queue") -> Tracer:
    return trace.get_tracer(name)


@contextmanager
def publish_span(tracer: Tracer, queue_name: str, correlation_id: str, priority: int) -> Iterator[Span]:
    """Open the ``<queue> publish`` span; messages go through the default exchange."""
    attributes = {
        "messaging.system": MESSAGING_SYSTEM,
        "messaging.operation": "publish",
        "messaging.destination.name": queue_name,
        "messaging.rabbitmq.destination.routing_key": queue_name,
        "messaging.message.conversation_id": correlation_id,
        "messaging.rabbitmq.message.priority": priority,
    }
    with tracer.start_as_current_span(f"{queue_name} publish", kind=SpanKind.PRODUCER, attributes=attributes) as span:
        yield span


def inject_headers(headers: Dict[str, str] | None = None) -> Dict[str, str]:
    """Return a copy of ``headers`` with the current trace context added."""
    carrier: Dict[str, str] = {} if headers is None else dict(headers)
    inject(carrier)
    return carrier
