"""
Observability for the council pipeline.

- Structured single-line logs with the run id as trace id
- Probes timing every stage, model call and test execution
- OpenTelemetry spans and metrics, Prometheus latency series

Usage:
    >>> from council.observability import get_logger, probe
    >>> logger = get_logger(__name__)
    >>> with probe("harness.run", trace_id=run_id, language="python"):
    ...     result = await harness.run(...)
"""

from .logging import bind_trace_id, get_logger, get_trace_id, setup_logging
from .metrics import get_metrics_collector, setup_metrics
from .probe import get_trace_metrics, probe
from .tracing import get_tracing_manager, setup_tracing, trace_span

__all__ = [
    "bind_trace_id",
    "get_logger",
    "get_trace_id",
    "setup_logging",
    "get_metrics_collector",
    "setup_metrics",
    "get_trace_metrics",
    "probe",
    "get_tracing_manager",
    "setup_tracing",
    "trace_span",
]
