"""
Test suite for the observability layer.

Key areas covered:
- Structured log line format and trace id scoping
- Probe timings per trace id
- In-process metrics aggregation
- Span decorator behavior
- Audit snapshots built from probe timings
"""

import asyncio
import logging
import unittest

import pytest

from council.core.audit import create_run_snapshot
from council.models import Run, RunStatus
from council.observability import metrics
from council.observability.logging import (
    StructuredFormatter,
    bind_trace_id,
    get_logger,
    get_trace_id,
)
from council.observability.metrics import MetricsCollector, get_metrics_collector
from council.observability.probe import (
    _METRICS_STORE,
    _reset_trace_metrics_for_tests,
    clear_trace_metrics,
    get_trace_metrics,
    probe,
)
from council.observability.tracing import trace_span


def make_record(msg="hello", **extra):
    record = logging.makeLogRecord(
        {"name": "council.core.orchestrator", "levelname": "INFO", "msg": msg, **extra}
    )
    record.funcName = "execute"
    return record


class TestStructuredFormatter(unittest.TestCase):
    """Single-line key=value rendering."""

    def test_line_shape(self):
        line = StructuredFormatter().format(make_record(trace_id="run_1", ms=12.34, language="go"))

        self.assertIn("level=INFO trace=run_1 mod=orchestrator op=execute ms=12.3", line)
        self.assertIn('msg="hello"', line)
        self.assertTrue(line.endswith(" language=go"))
        self.assertTrue(line.startswith("t="))

    def test_trace_defaults_to_context_then_dash(self):
        formatter = StructuredFormatter()

        self.assertIn("trace=- ", formatter.format(make_record()))
        with bind_trace_id("run_ctx"):
            self.assertIn("trace=run_ctx ", formatter.format(make_record()))


class TestTraceIdBinding(unittest.TestCase):
    def test_nested_binding_restores_previous(self):
        self.assertIsNone(get_trace_id())
        with bind_trace_id("outer"):
            with bind_trace_id("inner"):
                self.assertEqual(get_trace_id(), "inner")
            self.assertEqual(get_trace_id(), "outer")
        self.assertIsNone(get_trace_id())

    def test_concurrent_tasks_keep_their_own_id(self):
        async def worker(run_id):
            with bind_trace_id(run_id):
                await asyncio.sleep(0.01)
                return get_trace_id()

        async def main():
            return await asyncio.gather(worker("run_a"), worker("run_b"))

        self.assertEqual(asyncio.run(main()), ["run_a", "run_b"])

    def test_logger_is_cached(self):
        self.assertIs(get_logger("council.x"), get_logger("council.x"))


class TestProbe:
    def setup_method(self):
        _reset_trace_metrics_for_tests()

    def test_timings_are_recorded_per_trace(self):
        with probe("harness.run", "run_1", language="python"):
            pass
        with probe("harness.run", "run_1", language="go"):
            pass
        with probe("harness.run", "run_2"):
            pass

        timings = get_trace_metrics("run_1")
        assert set(timings) == {"harness.run", "harness.run#2"}
        assert timings["harness.run#2"]["labels"] == {"language": "go"}
        assert timings["harness.run"]["success"] is True
        assert len(get_trace_metrics("run_2")) == 1

    def test_failure_is_recorded_and_reraised(self):
        with pytest.raises(KeyError):
            with probe("planner.plan", "run_1"):
                raise KeyError("boom")

        timing = get_trace_metrics("run_1")["planner.plan"]
        assert timing["success"] is False
        assert timing["error_type"] == "KeyError"

    def test_clear(self):
        with probe("op", "run_1"):
            pass
        clear_trace_metrics("run_1")
        assert get_trace_metrics("run_1") == {}

    def test_without_trace_nothing_is_stored(self):
        with probe("op"):
            pass
        assert _METRICS_STORE == {}


class TestMetricsCollector:
    def test_snapshot_aggregates(self):
        collector = get_metrics_collector()

        collector.record_agent_call("planner", True)
        collector.record_agent_call("planner", False)
        collector.record_test_execution("python", "failed", 0.5)
        collector.record_test_execution("python", "passed", 0.4)
        collector.record_run("succeeded", {"python": 2})

        snapshot = collector.snapshot()
        assert snapshot["agents"] == {"planner": {"calls": 2, "failures": 1}}
        assert snapshot["tests"] == {"python": {"failed": 1, "passed": 1}}
        assert snapshot["runs"] == {"succeeded": 1}

    def test_collector_is_shared_until_reset(self):
        assert get_metrics_collector() is get_metrics_collector()
        collector = metrics.setup_metrics()
        assert isinstance(collector, MetricsCollector)
        assert get_metrics_collector() is collector

    def test_custom_instruments_are_cached(self):
        collector = get_metrics_collector()
        assert collector.counter("retries") is collector.counter("retries")
        assert collector.histogram("sizes") is collector.histogram("sizes")


class TestTraceSpan:
    def test_sync_function(self):
        @trace_span("unit.sync")
        def add(a, b):
            return a + b

        assert add(1, 2) == 3
        assert add.__name__ == "add"

    @pytest.mark.asyncio
    async def test_async_function_and_errors(self):
        @trace_span()
        async def fail():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await fail()


class TestAuditSnapshot:
    def test_snapshot_includes_timings_and_versions(self):
        run = Run("run_a", "Add profile", frozenset({"python"}), "feature/profile")
        run.status = RunStatus.SUCCEEDED
        run.config_hash = "abc"
        with probe("orchestrator.run", "run_a"):
            pass

        snapshot = create_run_snapshot(
            run, {"b.py": 2, "a.py": 1}, additional_data={"note": "x"}
        )

        assert snapshot["status"] == "succeeded"
        assert snapshot["config_sha256"] == "abc"
        assert list(snapshot["artifact_versions"]) == ["a.py", "b.py"]
        assert snapshot["metadata"]["total_operations"] == 1
        assert snapshot["metadata"]["failed_operations"] == 0
        assert snapshot["note"] == "x"
