"""
Tests for the pipeline data model.
"""

from council.models import (
    Artifact,
    ArtifactKind,
    ArtifactStage,
    ContextBundle,
    LanguageStatus,
    Outcome,
    Plan,
    Run,
    RunFailure,
    RunState,
    RunStatus,
    TestExecutionResult,
    TestFailure,
    TestSpec,
    content_digest,
    new_id,
)


class TestRun:
    def test_new_run_defaults(self):
        run = Run("run_1", "Add profile", frozenset({"python", "go"}), "feature/profile")

        assert run.status is RunStatus.PENDING
        assert run.state is RunState.PLANNING
        assert run.state_history == ["planning"]
        assert list(run.tracks) == ["go", "python"]
        assert run.attempts_by_language() == {"go": 0, "python": 0}

    def test_round_trip_keeps_failure_and_tracks(self):
        run = Run("run_1", "Add profile", frozenset({"python"}), "feature/profile")
        track = run.tracks["python"]
        track.attempts = 3
        track.status = LanguageStatus.EXHAUSTED
        track.last_result = TestExecutionResult(
            "run_1", "python", 3, Outcome.FAILED, (TestFailure("test_get", "500 != 200"),)
        )
        run.status = RunStatus.FAILED
        run.failure = RunFailure("running_tests", "python exhausted", "AttemptsExhausted", "python")

        loaded = Run.from_dict(run.to_dict())

        assert loaded.failure == run.failure
        assert loaded.tracks["python"].status is LanguageStatus.EXHAUSTED
        assert loaded.tracks["python"].last_result.failures[0].message == "500 != 200"
        assert loaded.diagnostics() == run.diagnostics()

    def test_terminal_statuses(self):
        assert not RunStatus.PENDING.is_terminal
        assert RunStatus.SUCCEEDED.is_terminal
        assert RunStatus.FAILED.is_terminal
        assert RunStatus.ABANDONED.is_terminal


class TestPlanAndContext:
    def test_specs_for_language(self):
        plan = Plan(
            "plan_1",
            "run_1",
            (
                TestSpec("spec-1", "python", "a"),
                TestSpec("spec-2", "go", "b"),
                TestSpec("spec-3", "python", "c"),
            ),
        )

        assert [s.spec_id for s in plan.specs_for("python")] == ["spec-1", "spec-3"]
        assert Plan.from_dict(plan.to_dict()).test_specs == plan.test_specs

    def test_context_for_specs_deduplicates(self):
        bundle = ContextBundle(
            "plan_1", {"*": ("shared",), "spec-1": ("a", "b"), "spec-2": ("b", "c")}
        )

        assert bundle.for_specs(["spec-1", "spec-2"]) == ["shared", "a", "b", "c"]
        assert ContextBundle("plan_1").is_empty

    def test_shared_context_is_listed_once(self):
        bundle = ContextBundle("plan_1", {"*": ("shared",), "spec-1": ("a",)})

        assert bundle.for_spec("*") == ["shared"]
        assert bundle.for_spec("spec-1") == ["shared", "a"]


class TestResultsAndArtifacts:
    def test_result_summary(self):
        passed = TestExecutionResult("run_1", "go", 1, Outcome.PASSED)
        failed = TestExecutionResult(
            "run_1", "go", 2, Outcome.FAILED, (TestFailure("TestGet", "want 200"),)
        )

        assert passed.summary() == "go attempt 1: passed"
        assert failed.summary() == "go attempt 2: failed (TestGet: want 200)"

    def test_artifact_digest_and_round_trip(self):
        artifact = Artifact(
            "run_1", "a.py", "python", "x = 1\n", ArtifactStage.CODE, ArtifactKind.SOURCE, 1
        )

        assert artifact.digest == content_digest("x = 1\n")
        assert Artifact.from_dict(artifact.to_dict()) == artifact

    def test_ids_are_prefixed_and_unique(self):
        first, second = new_id("run"), new_id("run")

        assert first.startswith("run_")
        assert first != second
