"""
Global pytest configuration, fixtures and test doubles.

The doubles stand in for the two external systems of a run: the model
gateway (answers are scripted per role) and the test harness (outcomes are
scripted per language and attempt).
"""

import asyncio
import json
import os
import re
from collections import Counter

import pytest

from council.agents.factory import AgentFactory
from council.config.settings import Settings, get_settings
from council.core.orchestrator import Orchestrator
from council.gateway.client import GatewayResponse, parse_structured
from council.models import Outcome, TestExecutionResult, TestFailure
from council.publisher.publisher import ChangePublisher
from council.storage.blobs import LocalStore
from council.storage.runs import RunRepository
from council.storage.versioned import VersionedArtifactStore


def reset_all_global_state():
    """Reset module-level state shared between tests."""
    from council.core.determinism import _reset_config_hash_for_tests
    from council.observability import metrics, tracing
    from council.observability.probe import _reset_trace_metrics_for_tests

    _reset_config_hash_for_tests()
    _reset_trace_metrics_for_tests()
    metrics._metrics_collector = None
    tracing._tracing_manager = None
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def test_isolation():
    reset_all_global_state()
    yield


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """Settings rooted in a temporary directory, free of COUNCIL_ overrides."""
    for key in list(os.environ):
        if key.startswith("COUNCIL_"):
            monkeypatch.delenv(key)
    return Settings(
        storage={"root": tmp_path / "data"},
        publisher={"directory": tmp_path / "changesets"},
        gateway={"max_attempts": 3, "backoff_multiplier": 0, "backoff_min": 0, "backoff_max": 0},
        observability={"enable_tracing": False},
    )


# Model gateway double -------------------------------------------------------


class FakeGateway:
    """Stands in for ModelGatewayClient; answers come from ``handler(role, prompt)``."""

    def __init__(self, handler):
        self.handler = handler
        self.calls: list[tuple[str, str]] = []

    async def invoke(self, role, prompt, schema=None):
        self.calls.append((role, prompt))
        answer = self.handler(role, prompt)
        if isinstance(answer, BaseException):
            raise answer
        text = answer if isinstance(answer, str) else json.dumps(answer)
        parsed = parse_structured(text, schema) if schema is not None else None
        return GatewayResponse(text=text, role=role, model=f"fake-{role}", parsed=parsed)

    async def aclose(self):
        pass

    def roles(self) -> list[str]:
        return [role for role, _ in self.calls]


TEST_PATHS = {
    "python": "tests/test_profile_{n}.py",
    "typescript": "src/profile_{n}.test.ts",
    "go": "profile/profile_{n}_test.go",
}
SOURCE_PATHS = {
    "python": "profile/service.py",
    "typescript": "src/profile.ts",
    "go": "profile/profile.go",
}


class ScriptedModels:
    """Deterministic model answers for a whole run.

    ``specs`` maps language to the number of test specs the planner emits.
    ``failing_roles`` maps a role to an exception raised for every call.
    ``stuck_refiner`` languages get refinements identical to their input.
    """

    def __init__(self, specs: dict[str, int], failing_roles=None, stuck_refiner=()):
        self.specs = specs
        self.failing_roles = failing_roles or {}
        self.stuck_refiner = set(stuck_refiner)
        self.refinements: Counter[str] = Counter()

    def __call__(self, role, prompt):
        if role in self.failing_roles:
            return self.failing_roles[role]
        if role == "planner":
            return {
                "test_specs": [
                    {"language": lang, "description": f"{lang} behavior {i}"}
                    for lang, count in sorted(self.specs.items())
                    for i in range(1, count + 1)
                ]
            }
        if role == "context":
            return {"entries": [{"spec_id": "*", "snippets": ["GET /profile returns JSON"]}]}
        if role == "generator" and "Write the test file" in prompt:
            spec_id = re.search(r"specification (spec-\d+)", prompt).group(1)
            language = re.search(r"## Specification\n\[(\w+)\]", prompt).group(1)
            path = TEST_PATHS[language].format(n=spec_id.split("-")[1])
            return {"files": [{"path": path, "content": f"// test for {spec_id}\n"}]}
        if role == "generator":
            language = re.search(r"Write the (\w+) implementation", prompt).group(1)
            return {"files": [{"path": SOURCE_PATHS[language], "content": f"{language} v1\n"}]}
        if role == "refiner":
            language = re.search(r"Fix the (\w+) suite", prompt).group(1)
            if language in self.stuck_refiner:
                content = f"{language} v1\n"
            else:
                self.refinements[language] += 1
                content = f"{language} v{self.refinements[language] + 1}\n"
            return {
                "rationale": "fix",
                "files": [{"path": SOURCE_PATHS[language], "content": content}],
            }
        if role == "reviewer":
            return {
                "findings": [
                    {"severity": "low", "file": "profile/service.py", "message": "add docstrings"}
                ]
            }
        raise AssertionError(f"unexpected role {role}")


# Harness double -------------------------------------------------------------


class FakeHarness:
    """Scripted test outcomes per language; the last outcome repeats."""

    __test__ = False

    def __init__(self, outcomes=None, delay: float = 0.0):
        self.outcomes = {lang: list(seq) for lang, seq in (outcomes or {}).items()}
        self.delay = delay
        self.calls: list[dict] = []
        self.running = 0
        self.max_running = 0

    async def run(self, language, tests, code, run_id="adhoc", attempt=1):
        self.calls.append(
            {
                "language": language,
                "attempt": attempt,
                "files": {a.path: a.version for a in [*tests, *code]},
                "contents": {a.path: a.content for a in code},
            }
        )
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.running -= 1
        seq = self.outcomes.get(language) or [Outcome.PASSED]
        outcome = seq[min(attempt, len(seq)) - 1]
        failures = ()
        if outcome is Outcome.FAILED:
            failures = (TestFailure("test_profile", f"{language} assertion failed"),)
        return TestExecutionResult(
            run_id=run_id,
            language=language,
            attempt=attempt,
            outcome=outcome,
            failures=failures,
            diagnostics=f"{language} attempt {attempt}: {outcome.value}",
        )

    def attempts(self, language: str) -> list[int]:
        return [c["attempt"] for c in self.calls if c["language"] == language]


@pytest.fixture
def make_orchestrator(settings):
    """Build an orchestrator wired to the doubles and temporary storage."""

    def _make(models, harness=None):
        blobs = LocalStore(settings.storage.root)
        gateway = FakeGateway(models)
        orchestrator = Orchestrator(
            settings,
            agents=AgentFactory(settings, gateway),
            artifacts=VersionedArtifactStore(blobs),
            runs=RunRepository(blobs),
            harness=harness or FakeHarness(),
            publisher=ChangePublisher(LocalStore(settings.publisher.directory)),
        )
        orchestrator.gateway = gateway
        return orchestrator

    return _make
