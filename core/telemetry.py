from typing import Optional

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor


def setup_telemetry(
    service_name: str, otlp_endpoint: Optional[str]
) -> Optional[TracerProvider]:
    """
    initialize OpenTelemetry, only when an OTLP endpoint is configured
    :param service_name:
    :param otlp_endpoint:
    :return: TracerProvider or None
    """
    if not otlp_endpoint:
        return None

    resource = Resource.create(
        attributes={
            "service.name": service_name,
            "service.version": "1.0.0",
        }
    )
    provider = TracerProvider(resource=resource)

    exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    return provider


def instrument_app(app: FastAPI, with_redis: bool = False) -> None:
    """
    Auto-Instrument the API, its outbound HTTPX calls and (optionally) redis
    :param app:
    :param with_redis:
    :return:
    """
    FastAPIInstrumentor.instrument_app(app)
    HTTPXClientInstrumentor().instrument()
    if with_redis:
        RedisInstrumentor().instrument()
