"""
Tests for change-set publishing and approval.
"""

import pytest

from council.errors import CouncilError, RunNotFound
from council.models import (
    Artifact,
    ArtifactKind,
    ArtifactStage,
    ChangeSetStatus,
    LanguageStatus,
    ReviewFinding,
    ReviewReport,
    Run,
    Severity,
)
from council.publisher.publisher import ChangePublisher
from council.storage.blobs import LocalStore


@pytest.fixture
def publisher(tmp_path):
    return ChangePublisher(LocalStore(tmp_path / "changesets"))


@pytest.fixture
def run():
    run = Run("run_1", "Add a profile endpoint", frozenset({"python"}), "feature/profile")
    run.tracks["python"].status = LanguageStatus.PASSED
    run.tracks["python"].attempts = 2
    return run


ARTIFACTS = [
    Artifact(
        "run_1", "profile/service.py", "python", "v2", ArtifactStage.REFINE, ArtifactKind.SOURCE, 2
    ),
    Artifact(
        "run_1", "tests/test_profile.py", "python", "t", ArtifactStage.TESTS, ArtifactKind.TEST, 1
    ),
]
REVIEW = ReviewReport(
    "run_1", findings=(ReviewFinding(Severity.MEDIUM, "profile/service.py", "validate ids"),)
)


class TestPublish:
    def test_layout(self, publisher, run):
        ref = publisher.publish(run, ARTIFACTS, REVIEW)

        root = publisher.blobs.root / "run_1"
        assert (root / "files" / "profile" / "service.py").read_text() == "v2"
        assert (root / "review.json").is_file()
        assert ref.status is ChangeSetStatus.UNREVIEWED
        assert ref.branch == "feature/profile"
        assert ref.files == ["profile/service.py", "tests/test_profile.py"]
        assert ref.location.endswith("/run_1")

        summary = (root / "CHANGESET.md").read_text()
        assert summary.startswith("# Add a profile endpoint")
        assert "- python: passed after 2 attempt(s)" in summary
        assert "`profile/service.py` (v2, source)" in summary
        assert "**medium** `profile/service.py`: validate ids" in summary

    def test_republish_is_idempotent(self, publisher, run):
        first = publisher.publish(run, ARTIFACTS, REVIEW)
        second = publisher.publish(run, ARTIFACTS, REVIEW)

        assert second == first

    def test_republish_with_different_content(self, publisher, run):
        publisher.publish(run, ARTIFACTS, REVIEW)

        with pytest.raises(CouncilError):
            publisher.publish(run, ARTIFACTS[:1], REVIEW)

    def test_review_warning_is_published(self, publisher, run):
        publisher.publish(run, ARTIFACTS, ReviewReport("run_1", warning="review unavailable"))

        summary = (publisher.blobs.root / "run_1" / "CHANGESET.md").read_text()
        assert "> review unavailable" in summary
        assert "No findings." in summary


class TestApproval:
    def test_approve(self, publisher, run):
        publisher.publish(run, ARTIFACTS, REVIEW)

        approved = publisher.approve("run_1", " alice ")

        assert approved.status is ChangeSetStatus.APPROVED
        assert approved.approved_by == "alice"
        assert publisher.get("run_1").status is ChangeSetStatus.APPROVED

        summary = (publisher.blobs.root / "run_1" / "CHANGESET.md").read_text()
        assert "UNREVIEWED" not in summary
        assert "Status: APPROVED by alice at " in summary

    def test_approve_twice_keeps_first_approval(self, publisher, run):
        publisher.publish(run, ARTIFACTS, REVIEW)
        first = publisher.approve("run_1", "alice")

        second = publisher.approve("run_1", "bob")

        assert second.approved_by == "alice"
        assert second.approved_at == first.approved_at

    def test_approve_requires_reviewer(self, publisher, run):
        publisher.publish(run, ARTIFACTS, REVIEW)

        with pytest.raises(ValueError):
            publisher.approve("run_1", "  ")

    def test_unpublished_run(self, publisher):
        with pytest.raises(RunNotFound):
            publisher.get("run_x")
        with pytest.raises(RunNotFound):
            publisher.approve("run_x", "alice")
