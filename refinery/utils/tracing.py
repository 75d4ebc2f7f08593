"""OpenTelemetry tracing setup."""

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from refinery.config import settings


def setup_tracing() -> None:
    """Install a tracer provider with a console exporter when tracing is enabled."""
    if not settings.enable_tracing:
        return

    provider = TracerProvider()
    trace.set_tracer_provider(provider)
    provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))


def get_tracer(name: str):
    """Get tracer instance.

    Args:
        name: Tracer name.

    Returns:
        Tracer instance (a no-op tracer until ``setup_tracing`` installs a provider).
    """
    return trace.get_tracer(name)


def get_trace_id() -> str:
    """Get current trace ID as a 32-char hex string, or "" outside a span."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return ""
    return format(context.trace_id, "032x")
