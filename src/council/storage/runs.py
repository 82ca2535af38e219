"""
Persistence of run records.

Layout under the blob store root::

    runs/<run_id>/run.json                       mutable run record
    runs/<run_id>/plan.json                      written once
    runs/<run_id>/context.json                   written once
    runs/<run_id>/results/<lang>/attempt_<n>.json written once per attempt
    runs/<run_id>/review.json                    written once
    runs/<run_id>/snapshot.json                  audit snapshot, refreshed
"""

from typing import Any

from ..errors import RunNotFound
from ..models import ContextBundle, Plan, ReviewReport, Run, TestExecutionResult
from ..observability.logging import get_logger
from .blobs import BlobStore

logger = get_logger(__name__)


class RunRepository:
    """Stores every entity of a run under its run id."""

    def __init__(self, blobs: BlobStore):
        self.blobs = blobs

    @staticmethod
    def _key(run_id: str, name: str) -> str:
        return f"runs/{run_id}/{name}"

    # Runs -------------------------------------------------------------------

    def save_run(self, run: Run) -> None:
        self.blobs.save_json(self._key(run.run_id, "run.json"), run.to_dict())

    def load_run(self, run_id: str) -> Run:
        try:
            return Run.from_dict(self.blobs.read_json(self._key(run_id, "run.json")))
        except FileNotFoundError as e:
            raise RunNotFound(run_id) from e

    def list_run_ids(self) -> list[str]:
        return sorted(
            blob.split("/")[1]
            for blob in self.blobs.list_paths("runs")
            if blob.endswith("/run.json") and blob.count("/") == 2
        )

    # Plan and context -------------------------------------------------------

    def save_plan(self, plan: Plan) -> None:
        self.blobs.create_json(self._key(plan.run_id, "plan.json"), plan.to_dict())

    def load_plan(self, run_id: str) -> Plan | None:
        key = self._key(run_id, "plan.json")
        if not self.blobs.exists(key):
            return None
        return Plan.from_dict(self.blobs.read_json(key))

    def save_context(self, run_id: str, bundle: ContextBundle) -> None:
        self.blobs.create_json(self._key(run_id, "context.json"), bundle.to_dict())

    def load_context(self, run_id: str) -> ContextBundle | None:
        key = self._key(run_id, "context.json")
        if not self.blobs.exists(key):
            return None
        return ContextBundle.from_dict(self.blobs.read_json(key))

    # Test execution results -------------------------------------------------

    def save_result(self, result: TestExecutionResult) -> None:
        key = self._key(
            result.run_id, f"results/{result.language}/attempt_{result.attempt:03d}.json"
        )
        self.blobs.create_json(key, result.to_dict())

    def load_results(self, run_id: str, language: str | None = None) -> list[TestExecutionResult]:
        prefix = self._key(run_id, f"results/{language}" if language else "results")
        results = [
            TestExecutionResult.from_dict(self.blobs.read_json(blob))
            for blob in self.blobs.list_paths(prefix)
            if blob.endswith(".json")
        ]
        return sorted(results, key=lambda r: (r.language, r.attempt))

    # Review and audit -------------------------------------------------------

    def save_review(self, report: ReviewReport) -> None:
        self.blobs.create_json(self._key(report.run_id, "review.json"), report.to_dict())

    def load_review(self, run_id: str) -> ReviewReport | None:
        key = self._key(run_id, "review.json")
        if not self.blobs.exists(key):
            return None
        return ReviewReport.from_dict(self.blobs.read_json(key))

    def save_snapshot(self, run_id: str, snapshot: dict[str, Any]) -> None:
        self.blobs.save_json(self._key(run_id, "snapshot.json"), snapshot)
