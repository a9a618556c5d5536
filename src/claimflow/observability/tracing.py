"""OpenTelemetry tracing configuration for Claimflow.

Tracing is disabled by default. When enabled, job runs and API requests are
wrapped in spans carrying organization and job identifiers.

Environment Variables:
    CLAIMFLOW_OTEL_ENABLED: Set to "1" to enable tracing (default: disabled)
    CLAIMFLOW_OTEL_SERVICE_NAME: Service name for spans (default: "claimflow")
    CLAIMFLOW_OTEL_EXPORTER: Exporter type - "otlp" or "console" (default: "otlp")
    CLAIMFLOW_OTEL_EXPORTER_OTLP_ENDPOINT: OTLP endpoint URL (optional)
    CLAIMFLOW_OTEL_TEST_CAPTURE: Set to "1" to use in-memory exporter for tests

Never put claim amounts, diagnosis codes or free-text event details in span
attributes.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from opentelemetry.sdk.trace import ReadableSpan, TracerProvider

logger = logging.getLogger(__name__)

OTEL_ENABLED_ENV = "CLAIMFLOW_OTEL_ENABLED"
OTEL_SERVICE_NAME_ENV = "CLAIMFLOW_OTEL_SERVICE_NAME"
OTEL_EXPORTER_ENV = "CLAIMFLOW_OTEL_EXPORTER"
OTEL_ENDPOINT_ENV = "CLAIMFLOW_OTEL_EXPORTER_OTLP_ENDPOINT"
OTEL_TEST_CAPTURE_ENV = "CLAIMFLOW_OTEL_TEST_CAPTURE"

TRACER_NAME = "claimflow"

_tracer_provider: TracerProvider | None = None
_test_exporter: Any = None


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean from environment variable."""
    val = os.environ.get(key, "").strip().lower()
    if val in ("1", "true", "yes"):
        return True
    if val in ("0", "false", "no"):
        return False
    return default


def is_tracing_enabled() -> bool:
    return _get_env_bool(OTEL_ENABLED_ENV, False)


def configure_tracing() -> bool:
    """Configure OpenTelemetry tracing.

    Idempotent - safe to call multiple times.

    Returns:
        True if tracing is enabled and configured, False otherwise.
    """
    global _tracer_provider, _test_exporter

    if not is_tracing_enabled():
        logger.debug("OpenTelemetry tracing disabled (%s not set)", OTEL_ENABLED_ENV)
        return False

    if _tracer_provider is not None:
        return True

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor

        service_name = os.environ.get(OTEL_SERVICE_NAME_ENV, "claimflow").strip() or "claimflow"
        exporter_type = os.environ.get(OTEL_EXPORTER_ENV, "otlp").strip()
        test_capture = _get_env_bool(OTEL_TEST_CAPTURE_ENV, False)

        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))

        if test_capture:
            from opentelemetry.sdk.trace.export.in_memory_span_exporter import (
                InMemorySpanExporter,
            )

            _test_exporter = InMemorySpanExporter()
            provider.add_span_processor(SimpleSpanProcessor(_test_exporter))
        elif exporter_type == "console":
            from opentelemetry.sdk.trace.export import ConsoleSpanExporter

            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        else:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

            endpoint = os.environ.get(OTEL_ENDPOINT_ENV, "").strip()
            exporter = OTLPSpanExporter(endpoint=endpoint) if endpoint else OTLPSpanExporter()
            provider.add_span_processor(BatchSpanProcessor(exporter))

        trace.set_tracer_provider(provider)
        _tracer_provider = provider

        logger.info(
            "OpenTelemetry tracing configured: service=%s, exporter=%s",
            service_name,
            exporter_type if not test_capture else "in-memory",
        )
        return True

    except Exception as e:
        logger.error("Failed to configure OpenTelemetry tracing: %s", e)
        return False


def _get_tracer() -> Any:
    if _tracer_provider is None:
        return None
    return _tracer_provider.get_tracer(TRACER_NAME)


@contextmanager
def job_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[None]:
    """Wrap a block in a span when tracing is configured; no-op otherwise.

    Exceptions raised inside the block are recorded on the span and re-raised.
    """
    tracer = _get_tracer()
    if tracer is None:
        yield
        return

    with tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, str(value))
        yield


def instrument_fastapi(app: Any) -> None:
    """Instrument FastAPI application with OpenTelemetry."""
    if not is_tracing_enabled():
        return

    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(app, excluded_urls="health")
        logger.debug("FastAPI instrumented with OpenTelemetry")
    except Exception as e:
        logger.warning("Failed to instrument FastAPI: %s", e)


def get_test_spans() -> list[ReadableSpan]:
    """Captured spans when CLAIMFLOW_OTEL_TEST_CAPTURE=1, else empty list."""
    if _test_exporter is not None:
        return list(_test_exporter.get_finished_spans())
    return []


def clear_test_spans() -> None:
    if _test_exporter is not None:
        _test_exporter.clear()
