"""
Logging and OpenTelemetry setup for the gateway service.
"""

import logging
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.resources import Resource

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    """Configure root logging from a level name such as "info"."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)


def setup_tracing(service_name: str, endpoint: Optional[str]) -> Optional[TracerProvider]:
    """
    Install an OTLP tracer provider.

    Without an endpoint spans are created against the default no-op provider.
    """
    if not endpoint:
        logger.info("No OTLP endpoint configured, tracing export disabled")
        return None

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    logger.info(f"Exporting traces to {endpoint}")
    return provider
