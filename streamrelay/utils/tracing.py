from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.resources import Resource
from streamrelay.utils.logging import get_logger

logger = get_logger("tracing")


def init_tracer(service_name: str) -> None:
    """Install an SDK tracer provider that prints spans to the console."""
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    logger.info(f"Initialized tracer for {service_name}")


def get_tracer(name: str) -> trace.Tracer:
    # No-op tracer until init_tracer() installs a provider.
    return trace.get_tracer(f"streamrelay.{name}")
