"""
Tests for the blob store, the versioned artifact store and the run repository.
"""

import asyncio

import pytest

from council.errors import RunNotFound
from council.models import (
    ArtifactKind,
    ArtifactStage,
    ContextBundle,
    Outcome,
    Plan,
    ReviewReport,
    Run,
    RunStatus,
    TestExecutionResult,
    TestSpec,
)
from council.storage.blobs import LocalStore
from council.storage.runs import RunRepository
from council.storage.versioned import VersionedArtifactStore


@pytest.fixture
def blobs(tmp_path):
    return LocalStore(tmp_path / "blobs")


class TestLocalStore:
    def test_save_and_read(self, blobs):
        ref = blobs.save_text("a/b.txt", "hello")

        assert ref.backend == "local"
        assert ref.size_bytes == 5
        assert blobs.read_text("a/b.txt") == "hello"
        assert blobs.exists("a/b.txt")

    def test_save_overwrites_create_does_not(self, blobs):
        blobs.save_text("x.json", "1")
        blobs.save_text("x.json", "2")
        assert blobs.read_text("x.json") == "2"

        with pytest.raises(FileExistsError):
            blobs.create_text("x.json", "3")
        assert blobs.read_text("x.json") == "2"

    def test_missing_blob(self, blobs):
        with pytest.raises(FileNotFoundError):
            blobs.read_text("nope.txt")

    def test_paths_cannot_escape_root(self, blobs):
        with pytest.raises(ValueError):
            blobs.save_text("../outside.txt", "x")

    def test_list_paths_is_sorted_and_hides_temp_files(self, blobs):
        blobs.save_text("d/2.txt", "")
        blobs.save_text("d/1.txt", "")
        (blobs.root / "d" / ".partial.tmp").write_text("x")

        assert blobs.list_paths("d") == ["d/1.txt", "d/2.txt"]
        assert blobs.list_paths("missing") == []

    def test_json_round_trip(self, blobs):
        blobs.save_json("obj.json", {"b": [1, 2], "a": None})
        assert blobs.read_json("obj.json") == {"a": None, "b": [1, 2]}


class TestVersionedArtifactStore:
    @pytest.mark.asyncio
    async def test_versions_start_at_one_and_increase(self, blobs):
        store = VersionedArtifactStore(blobs)

        first = await store.append(
            "run_1", "src/app.py", "python", "v1", ArtifactStage.CODE, ArtifactKind.SOURCE
        )
        second = await store.append(
            "run_1", "src/app.py", "python", "v2", ArtifactStage.REFINE, ArtifactKind.SOURCE
        )

        assert (first.version, second.version) == (1, 2)
        assert store.latest("run_1", "src/app.py").content == "v2"
        # Earlier versions stay retrievable and unchanged.
        assert store.get("run_1", "src/app.py", 1).content == "v1"
        assert store.get("run_1", "src/app.py", 1).digest == first.digest

    @pytest.mark.asyncio
    async def test_concurrent_appends_get_distinct_versions(self, blobs):
        store = VersionedArtifactStore(blobs)

        artifacts = await asyncio.gather(
            *(
                store.append(
                    "run_1", "a.py", "python", f"c{i}", ArtifactStage.REFINE, ArtifactKind.SOURCE
                )
                for i in range(10)
            )
        )

        assert sorted(a.version for a in artifacts) == list(range(1, 11))
        assert [a.version for a in store.history("run_1", "a.py")] == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_runs_do_not_share_versions(self, blobs):
        store = VersionedArtifactStore(blobs)

        await store.append("run_1", "a.py", "python", "x", ArtifactStage.CODE, ArtifactKind.SOURCE)
        other = await store.append(
            "run_2", "a.py", "python", "y", ArtifactStage.CODE, ArtifactKind.SOURCE
        )

        assert other.version == 1
        assert store.latest("run_1", "a.py").content == "x"

    @pytest.mark.asyncio
    async def test_latest_for_run_filters(self, blobs):
        store = VersionedArtifactStore(blobs)
        await store.append(
            "r", "tests/test_a.py", "python", "t", ArtifactStage.TESTS, ArtifactKind.TEST
        )
        await store.append("r", "a.py", "python", "s", ArtifactStage.CODE, ArtifactKind.SOURCE)
        await store.append("r", "a.go", "go", "g", ArtifactStage.CODE, ArtifactKind.SOURCE)

        assert store.paths("r") == ["a.go", "a.py", "tests/test_a.py"]
        sources = store.latest_for_run("r", language="python", kind=ArtifactKind.SOURCE)
        assert [a.path for a in sources] == ["a.py"]
        assert store.latest("r", "unknown.py") is None


class TestRunRepository:
    def test_run_round_trip(self, blobs):
        repo = RunRepository(blobs)
        run = Run("run_1", "Add profile", frozenset({"python", "go"}), "feature/profile")
        run.spec_tests["spec-1"] = "tests/test_profile.py"

        repo.save_run(run)
        loaded = repo.load_run("run_1")

        assert loaded.target_languages == frozenset({"python", "go"})
        assert loaded.status is RunStatus.PENDING
        assert set(loaded.tracks) == {"go", "python"}
        assert loaded.spec_tests == {"spec-1": "tests/test_profile.py"}
        assert repo.list_run_ids() == ["run_1"]

    def test_unknown_run(self, blobs):
        with pytest.raises(RunNotFound):
            RunRepository(blobs).load_run("run_x")

    def test_plan_and_context_are_written_once(self, blobs):
        repo = RunRepository(blobs)
        plan = Plan("plan_1", "run_1", (TestSpec("spec-1", "python", "returns 200"),))

        repo.save_plan(plan)
        with pytest.raises(FileExistsError):
            repo.save_plan(plan)
        repo.save_context("run_1", ContextBundle("plan_1", {"*": ("note",)}))

        assert repo.load_plan("run_1").test_specs == plan.test_specs
        assert repo.load_context("run_1").for_spec("spec-1") == ["note"]
        assert repo.load_plan("run_2") is None

    def test_results_are_ordered_by_attempt(self, blobs):
        repo = RunRepository(blobs)
        for attempt, outcome in ((2, Outcome.PASSED), (1, Outcome.FAILED)):
            repo.save_result(TestExecutionResult("run_1", "python", attempt, outcome))
        repo.save_result(TestExecutionResult("run_1", "go", 1, Outcome.ERROR))

        python = repo.load_results("run_1", "python")
        assert [(r.attempt, r.outcome) for r in python] == [
            (1, Outcome.FAILED),
            (2, Outcome.PASSED),
        ]
        assert len(repo.load_results("run_1")) == 3

    def test_review_round_trip(self, blobs):
        repo = RunRepository(blobs)
        repo.save_review(ReviewReport("run_1", warning="review unavailable"))

        assert repo.load_review("run_1").warning == "review unavailable"
        assert repo.load_review("run_2") is None
