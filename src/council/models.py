"""
Domain records for the pipeline.

All records serialize to plain dicts so the run repository can persist them
as JSON and load them back after a restart.
"""

import hashlib
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def content_digest(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class RunStatus(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.PENDING


class RunState(Enum):
    """Pipeline states of a Run."""

    PLANNING = "planning"
    GATHERING_CONTEXT = "gathering_context"
    GENERATING_TESTS = "generating_tests"
    GENERATING_CODE = "generating_code"
    RUNNING_TESTS = "running_tests"
    REFINING = "refining"
    REVIEWING = "reviewing"
    PUBLISHING = "publishing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ArtifactStage(Enum):
    """Stage that produced an artifact version."""

    TESTS = "tests"
    CODE = "code"
    REVIEW = "review"
    REFINE = "refine"


class ArtifactKind(Enum):
    TEST = "test"
    SOURCE = "source"


class Outcome(Enum):
    PASSED = "passed"
    FAILED = "failed"  # tests ran, assertions failed
    ERROR = "error"  # environment setup failure, crash or timeout


class Severity(Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LanguageStatus(Enum):
    """Per-language verification track status."""

    PENDING = "pending"
    RUNNING = "running"
    REFINING = "refining"
    PASSED = "passed"
    EXHAUSTED = "exhausted"


@dataclass
class TestSpec:
    spec_id: str
    language: str
    description: str

    __test__ = False  # not a pytest class

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestSpec":
        return cls(**data)


@dataclass(frozen=True)
class Plan:
    plan_id: str
    run_id: str
    test_specs: tuple[TestSpec, ...]
    created_at: datetime = field(default_factory=utcnow)

    def specs_for(self, language: str) -> list[TestSpec]:
        return [s for s in self.test_specs if s.language == language]

    @property
    def languages(self) -> set[str]:
        return {s.language for s in self.test_specs}

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "run_id": self.run_id,
            "test_specs": [s.to_dict() for s in self.test_specs],
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Plan":
        return cls(
            plan_id=data["plan_id"],
            run_id=data["run_id"],
            test_specs=tuple(TestSpec.from_dict(s) for s in data["test_specs"]),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


SHARED_CONTEXT_KEY = "*"


@dataclass(frozen=True)
class ContextBundle:
    """Reference material keyed by test spec id (``*`` for the whole plan)."""

    plan_id: str
    entries: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not any(self.entries.values())

    def for_spec(self, spec_id: str) -> list[str]:
        return self.for_specs([spec_id])

    def for_specs(self, spec_ids: list[str]) -> list[str]:
        seen: list[str] = list(self.entries.get(SHARED_CONTEXT_KEY, ()))
        for spec_id in spec_ids:
            for snippet in self.entries.get(spec_id, ()):
                if snippet not in seen:
                    seen.append(snippet)
        return seen

    def to_dict(self) -> dict[str, Any]:
        return {"plan_id": self.plan_id, "entries": {k: list(v) for k, v in self.entries.items()}}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContextBundle":
        return cls(
            plan_id=data["plan_id"],
            entries={k: tuple(v) for k, v in data.get("entries", {}).items()},
        )


@dataclass(frozen=True)
class Artifact:
    """One immutable version of a generated file."""

    run_id: str
    path: str
    language: str
    content: str
    stage: ArtifactStage
    kind: ArtifactKind
    version: int
    created_at: datetime = field(default_factory=utcnow)

    @property
    def digest(self) -> str:
        return content_digest(self.content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "path": self.path,
            "language": self.language,
            "content": self.content,
            "stage": self.stage.value,
            "kind": self.kind.value,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "digest": self.digest,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Artifact":
        return cls(
            run_id=data["run_id"],
            path=data["path"],
            language=data["language"],
            content=data["content"],
            stage=ArtifactStage(data["stage"]),
            kind=ArtifactKind(data["kind"]),
            version=data["version"],
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True)
class TestFailure:
    test_name: str
    message: str

    __test__ = False


@dataclass(frozen=True)
class TestExecutionResult:
    run_id: str
    language: str
    attempt: int
    outcome: Outcome
    failures: tuple[TestFailure, ...] = ()
    diagnostics: str = ""
    duration: float = 0.0
    created_at: datetime = field(default_factory=utcnow)

    __test__ = False

    @property
    def passed(self) -> bool:
        return self.outcome is Outcome.PASSED

    def summary(self) -> str:
        if self.passed:
            return f"{self.language} attempt {self.attempt}: passed"
        detail = "; ".join(f"{f.test_name}: {f.message}" for f in self.failures[:5])
        return f"{self.language} attempt {self.attempt}: {self.outcome.value}" + (
            f" ({detail})" if detail else ""
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "language": self.language,
            "attempt": self.attempt,
            "outcome": self.outcome.value,
            "failures": [asdict(f) for f in self.failures],
            "diagnostics": self.diagnostics,
            "duration": self.duration,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestExecutionResult":
        return cls(
            run_id=data["run_id"],
            language=data["language"],
            attempt=data["attempt"],
            outcome=Outcome(data["outcome"]),
            failures=tuple(TestFailure(**f) for f in data.get("failures", [])),
            diagnostics=data.get("diagnostics", ""),
            duration=data.get("duration", 0.0),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True)
class ReviewFinding:
    severity: Severity
    file: str
    message: str


@dataclass(frozen=True)
class ReviewReport:
    run_id: str
    findings: tuple[ReviewFinding, ...] = ()
    warning: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "findings": [
                {"severity": f.severity.value, "file": f.file, "message": f.message}
                for f in self.findings
            ],
            "warning": self.warning,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReviewReport":
        return cls(
            run_id=data["run_id"],
            findings=tuple(
                ReviewFinding(Severity(f["severity"]), f["file"], f["message"])
                for f in data.get("findings", [])
            ),
            warning=data.get("warning"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class LanguageTrack:
    """Verification progress of one target language within a run."""

    language: str
    status: LanguageStatus = LanguageStatus.PENDING
    attempts: int = 0
    last_result: TestExecutionResult | None = None
    refine_error: str | None = None

    @property
    def is_settled(self) -> bool:
        return self.status in (LanguageStatus.PASSED, LanguageStatus.EXHAUSTED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "language": self.language,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "refine_error": self.refine_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LanguageTrack":
        last = data.get("last_result")
        return cls(
            language=data["language"],
            status=LanguageStatus(data["status"]),
            attempts=data.get("attempts", 0),
            last_result=TestExecutionResult.from_dict(last) if last else None,
            refine_error=data.get("refine_error"),
        )


@dataclass
class RunFailure:
    """Structured diagnostics for a FAILED run."""

    stage: str
    reason: str
    error_type: str | None = None
    language: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunFailure":
        return cls(**data)


@dataclass
class Run:
    run_id: str
    feature_description: str
    target_languages: frozenset[str]
    requested_branch_name: str
    created_at: datetime = field(default_factory=utcnow)
    status: RunStatus = RunStatus.PENDING
    state: RunState = RunState.PLANNING
    state_history: list[str] = field(default_factory=list)
    tracks: dict[str, LanguageTrack] = field(default_factory=dict)
    spec_tests: dict[str, str] = field(default_factory=dict)  # spec id -> test path
    failure: RunFailure | None = None
    change_set_id: str | None = None
    config_hash: str = ""
    finished_at: datetime | None = None

    def __post_init__(self):
        if not self.tracks:
            self.tracks = {lang: LanguageTrack(lang) for lang in sorted(self.target_languages)}
        if not self.state_history:
            self.state_history = [self.state.value]

    def attempts_by_language(self) -> dict[str, int]:
        return {lang: track.attempts for lang, track in self.tracks.items()}

    def diagnostics(self) -> dict[str, Any]:
        """What a human needs to diagnose the run without re-running it."""
        return {
            "status": self.status.value,
            "state": self.state.value,
            "failure": self.failure.to_dict() if self.failure else None,
            "languages": {lang: track.to_dict() for lang, track in self.tracks.items()},
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "feature_description": self.feature_description,
            "target_languages": sorted(self.target_languages),
            "requested_branch_name": self.requested_branch_name,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "state": self.state.value,
            "state_history": list(self.state_history),
            "tracks": {lang: t.to_dict() for lang, t in self.tracks.items()},
            "spec_tests": dict(self.spec_tests),
            "failure": self.failure.to_dict() if self.failure else None,
            "change_set_id": self.change_set_id,
            "config_hash": self.config_hash,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Run":
        failure = data.get("failure")
        finished = data.get("finished_at")
        return cls(
            run_id=data["run_id"],
            feature_description=data["feature_description"],
            target_languages=frozenset(data["target_languages"]),
            requested_branch_name=data["requested_branch_name"],
            created_at=datetime.fromisoformat(data["created_at"]),
            status=RunStatus(data["status"]),
            state=RunState(data["state"]),
            state_history=list(data.get("state_history", [])),
            tracks={
                lang: LanguageTrack.from_dict(t) for lang, t in data.get("tracks", {}).items()
            },
            spec_tests=dict(data.get("spec_tests", {})),
            failure=RunFailure.from_dict(failure) if failure else None,
            change_set_id=data.get("change_set_id"),
            config_hash=data.get("config_hash", ""),
            finished_at=datetime.fromisoformat(finished) if finished else None,
        )


class ChangeSetStatus(Enum):
    UNREVIEWED = "unreviewed"
    APPROVED = "approved"


@dataclass
class ChangeSetRef:
    change_set_id: str
    run_id: str
    branch: str
    location: str
    files: list[str]
    status: ChangeSetStatus = ChangeSetStatus.UNREVIEWED
    approved_by: str | None = None
    approved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "change_set_id": self.change_set_id,
            "run_id": self.run_id,
            "branch": self.branch,
            "location": self.location,
            "files": list(self.files),
            "status": self.status.value,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeSetRef":
        approved_at = data.get("approved_at")
        return cls(
            change_set_id=data["change_set_id"],
            run_id=data["run_id"],
            branch=data["branch"],
            location=data["location"],
            files=list(data.get("files", [])),
            status=ChangeSetStatus(data.get("status", "unreviewed")),
            approved_by=data.get("approved_by"),
            approved_at=datetime.fromisoformat(approved_at) if approved_at else None,
        )
