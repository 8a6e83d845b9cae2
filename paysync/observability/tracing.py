"""
Distributed Tracing with OpenTelemetry.

Spans cover the HTTP surface (FastAPI instrumentation), every SQL statement
(SQLAlchemy instrumentation) and the economic operations themselves via
``trace_operation``. Everything is a no-op when TRACING_ENABLED is false.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode
from sqlalchemy.ext.asyncio import AsyncEngine

from paysync.config import settings

_tracer = trace.get_tracer("paysync")


def setup_tracing() -> None:
    """Install an OTLP-exporting tracer provider."""
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.api_version,
            }
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: FastAPI) -> None:
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


def instrument_sqlalchemy(engine: AsyncEngine) -> None:
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def _attribute(value: Any) -> str | int | float | bool:
    if isinstance(value, str | int | float | bool):
        return value
    return str(value)


@contextmanager
def trace_operation(name: str, **attributes: Any) -> Iterator[Span]:
    """
    Run a block inside a span named ``paysync.<name>``.

    None-valued attributes are skipped. An exception marks the span as an
    error and propagates; business outcomes are recorded by the caller as
    attributes instead.
    """
    with _tracer.start_as_current_span(
        f"paysync.{name}", record_exception=False, set_status_on_exception=False
    ) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"paysync.{key}", _attribute(value))
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
            raise
