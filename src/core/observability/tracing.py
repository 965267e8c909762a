"""
OpenTelemetry Tracing

One span per delivery step, tagged with the outbox task it worked on.
Without init_tracing() the API's no-op tracer is used and spans cost nothing.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode

logger = logging.getLogger(__name__)

SERVICE = "chat-relay"
VERSION = "0.1.0"

_tracer: Optional[trace.Tracer] = None


def init_tracing(otlp_endpoint: Optional[str] = None, console: bool = False) -> trace.Tracer:
    """
    Install an SDK tracer provider.

    Args:
        otlp_endpoint: gRPC collector address, e.g. "http://localhost:4317"
        console: Also print finished spans to stdout
    """
    global _tracer

    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: SERVICE, SERVICE_VERSION: VERSION})
    )
    if otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
        )
    if console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(SERVICE, VERSION)
    logger.info(f"Tracing enabled (otlp={otlp_endpoint or 'off'}, console={console})")
    return _tracer


def get_tracer() -> trace.Tracer:
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(SERVICE, VERSION)
    return _tracer


def get_current_span() -> Span:
    return trace.get_current_span()


def get_trace_id() -> Optional[str]:
    """Hex trace id of the active span, None outside a recorded span."""
    context = get_current_span().get_span_context()
    if not context.is_valid:
        return None
    return format(context.trace_id, "032x")


@contextmanager
def create_span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[Span]:
    """
    Run a block inside a span; exceptions mark the span as failed and propagate.

    Usage:
        with create_span("outbox.deliver", {"outbox.id": task.id}) as span:
            span.set_attribute("outbox.outcome", "delivered")
    """
    with get_tracer().start_as_current_span(name, attributes=attributes or {}) as span:
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise


def add_event_to_span(name: str, attributes: Optional[Dict[str, Any]] = None) -> None:
    """Attach an event to the active span (no-op outside one)."""
    get_current_span().add_event(name, attributes or {})
