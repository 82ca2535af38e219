"""
OpenTelemetry tracing integration.

- Tracer provider with service resource attributes
- Optional OTLP export
- ``trace_span`` decorator for sync and async callables
"""

import asyncio
import functools
from collections.abc import Callable
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from .logging import get_logger

logger = get_logger(__name__)


class TracingManager:
    """Owns the tracer provider for the process."""

    def __init__(self, service_name: str = "council", service_version: str = "0.3.0"):
        self.service_name = service_name
        self.service_version = service_version
        self.tracer_provider: TracerProvider | None = None
        self.tracer: trace.Tracer = trace.get_tracer(service_name)
        self._initialized = False

    def initialize(self, otlp_endpoint: str | None = None) -> None:
        if self._initialized:
            return

        resource = Resource.create(
            {"service.name": self.service_name, "service.version": self.service_version}
        )
        self.tracer_provider = TracerProvider(resource=resource)
        if otlp_endpoint:
            self.tracer_provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint))
            )
            logger.info("OTLP span export enabled", endpoint=otlp_endpoint)
        trace.set_tracer_provider(self.tracer_provider)

        self.tracer = trace.get_tracer(self.service_name, self.service_version)
        self._initialized = True

    @contextmanager
    def span(self, name: str, attributes: dict[str, Any] | None = None):
        with self.tracer.start_as_current_span(name) as span:
            for key, value in (attributes or {}).items():
                span.set_attribute(key, str(value))
            try:
                yield span
            except Exception as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

    def shutdown(self) -> None:
        if self.tracer_provider:
            self.tracer_provider.shutdown()
        self._initialized = False


_tracing_manager: TracingManager | None = None


def get_tracing_manager() -> TracingManager:
    """Get the process tracing manager (uninitialized managers use the global no-op provider)."""
    global _tracing_manager
    if _tracing_manager is None:
        _tracing_manager = TracingManager()
    return _tracing_manager


def setup_tracing(
    service_name: str, service_version: str, otlp_endpoint: str | None = None
) -> TracingManager:
    global _tracing_manager
    _tracing_manager = TracingManager(service_name, service_version)
    _tracing_manager.initialize(otlp_endpoint)
    return _tracing_manager


def trace_span(name: str | None = None, attributes: dict[str, Any] | None = None):
    """Decorator wrapping a call in a span."""

    def decorator(func: Callable) -> Callable:
        span_name = name or f"{func.__module__}.{func.__qualname__}"
        span_attributes = {"function.name": func.__name__, **(attributes or {})}

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with get_tracing_manager().span(span_name, span_attributes) as span:
                result = await func(*args, **kwargs)
                span.set_status(Status(StatusCode.OK))
                return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with get_tracing_manager().span(span_name, span_attributes) as span:
                result = func(*args, **kwargs)
                span.set_status(Status(StatusCode.OK))
                return result

        return async_wrapper if asyncio.iscoroutinefunction(func) else sync_wrapper

    return decorator
