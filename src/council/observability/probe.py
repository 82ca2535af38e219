"""
Performance probes.

A probe times one operation, emits a structured log line, updates the
Prometheus request/latency series, opens an OpenTelemetry span and keeps the
timing per trace id so that run snapshots can include them.
"""

import contextlib
import time
from typing import Any

from opentelemetry import trace
from prometheus_client import Counter, Histogram

from .logging import get_logger

log = get_logger("council.probe")

tracer = trace.get_tracer("council")

REQS = Counter("council_ops_total", "Probed operations", ["op", "ok"])
LAT = Histogram("council_op_latency_seconds", "Probed operation latency", ["op"])

_METRICS_STORE: dict[str, dict[str, dict[str, Any]]] = {}


@contextlib.contextmanager
def probe(op: str, trace_id: str | None = None, **labels):
    """Time ``op``; failures are recorded and re-raised."""
    start_time = time.perf_counter()
    ok = "true"
    error_type = None

    with tracer.start_as_current_span(op):
        try:
            yield
        except BaseException as e:
            ok = "false"
            error_type = type(e).__name__
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log.info(
                f"op={op} ok={ok}" + (f" error={error_type}" if error_type else ""),
                op=op,
                ms=duration_ms,
                trace_id=trace_id,
                **labels,
            )
            REQS.labels(op=op, ok=ok).inc()
            LAT.labels(op=op).observe(duration_ms / 1000.0)

            if trace_id:
                ops = _METRICS_STORE.setdefault(trace_id, {})
                key = op
                if key in ops:
                    key = f"{op}#{sum(1 for k in ops if k.split('#')[0] == op) + 1}"
                ops[key] = {
                    "duration_ms": duration_ms,
                    "success": ok == "true",
                    "error_type": error_type,
                    "labels": {k: str(v) for k, v in labels.items()},
                    "timestamp": time.time(),
                }


def get_trace_metrics(trace_id: str) -> dict[str, Any]:
    """Get all probe timings recorded for a trace id."""
    return dict(_METRICS_STORE.get(trace_id, {}))


def clear_trace_metrics(trace_id: str) -> None:
    _METRICS_STORE.pop(trace_id, None)


def _reset_trace_metrics_for_tests():
    _METRICS_STORE.clear()
