"""
Pipeline metrics on the OpenTelemetry metrics API.

Instruments cover gateway calls, agent calls, harness executions and run
outcomes. An aggregated in-process view is kept for the health endpoint.
"""

from collections import Counter as Tally
from collections import defaultdict
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import Counter, Histogram, Meter

from .logging import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Centralized metrics collection."""

    def __init__(self, meter: Meter):
        self.meter = meter
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}

        self._run_outcomes: Tally[str] = Tally()
        self._agent_calls: dict[str, int] = defaultdict(int)
        self._agent_failures: dict[str, int] = defaultdict(int)
        self._test_outcomes: dict[str, Tally[str]] = defaultdict(Tally)

        self._setup_default_metrics()

    def _setup_default_metrics(self):
        self._counters["gateway_calls_total"] = self.meter.create_counter(
            "council_gateway_calls_total", description="Model gateway invocations", unit="1"
        )
        self._histograms["gateway_latency"] = self.meter.create_histogram(
            "council_gateway_latency_seconds", description="Gateway call latency", unit="s"
        )
        self._counters["agent_calls_total"] = self.meter.create_counter(
            "council_agent_calls_total", description="Role agent calls", unit="1"
        )
        self._counters["test_executions_total"] = self.meter.create_counter(
            "council_test_executions_total", description="Harness executions", unit="1"
        )
        self._histograms["test_execution_duration"] = self.meter.create_histogram(
            "council_test_execution_duration_seconds",
            description="Harness execution duration",
            unit="s",
        )
        self._counters["runs_total"] = self.meter.create_counter(
            "council_runs_total", description="Runs by terminal status", unit="1"
        )
        self._histograms["run_attempts"] = self.meter.create_histogram(
            "council_run_attempts", description="Test attempts per language per run", unit="1"
        )

    def counter(self, name: str, description: str = "", unit: str = "1") -> Counter:
        if name not in self._counters:
            self._counters[name] = self.meter.create_counter(
                f"council_{name}", description=description, unit=unit
            )
        return self._counters[name]

    def histogram(self, name: str, description: str = "", unit: str = "1") -> Histogram:
        if name not in self._histograms:
            self._histograms[name] = self.meter.create_histogram(
                f"council_{name}", description=description, unit=unit
            )
        return self._histograms[name]

    def record_gateway_call(self, role: str, duration: float, outcome: str):
        attributes = {"role": role, "outcome": outcome}
        self._counters["gateway_calls_total"].add(1, attributes)
        self._histograms["gateway_latency"].record(duration, attributes)

    def record_agent_call(self, role: str, success: bool):
        self._counters["agent_calls_total"].add(1, {"role": role, "success": str(success).lower()})
        self._agent_calls[role] += 1
        if not success:
            self._agent_failures[role] += 1

    def record_test_execution(self, language: str, outcome: str, duration: float):
        attributes = {"language": language, "outcome": outcome}
        self._counters["test_executions_total"].add(1, attributes)
        self._histograms["test_execution_duration"].record(duration, attributes)
        self._test_outcomes[language][outcome] += 1

    def record_run(self, status: str, attempts_by_language: dict[str, int]):
        self._counters["runs_total"].add(1, {"status": status})
        for language, attempts in attempts_by_language.items():
            self._histograms["run_attempts"].record(attempts, {"language": language})
        self._run_outcomes[status] += 1

    def snapshot(self) -> dict[str, Any]:
        """Aggregated in-process view of what has been recorded."""
        return {
            "runs": dict(self._run_outcomes),
            "agents": {
                role: {"calls": calls, "failures": self._agent_failures[role]}
                for role, calls in self._agent_calls.items()
            },
            "tests": {lang: dict(tally) for lang, tally in self._test_outcomes.items()},
        }


_metrics_collector: MetricsCollector | None = None


def setup_metrics(meter: Meter | None = None) -> MetricsCollector:
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter or metrics.get_meter("council"))
    return _metrics_collector


def get_metrics_collector() -> MetricsCollector:
    """Get the global collector, creating one on the global meter provider."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(metrics.get_meter("council"))
    return _metrics_collector
