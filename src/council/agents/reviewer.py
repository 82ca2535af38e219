"""
Reviewer agent: produces the review report for a run's final artifacts.

Review never blocks a run. On any failure the report is empty and carries a
warning.
"""

from typing import Literal

from pydantic import BaseModel, Field

from ..models import Artifact, ReviewFinding, ReviewReport, Severity
from ..observability.logging import get_logger
from .base import RoleAgent, render_files

logger = get_logger(__name__)


class Finding(BaseModel):
    severity: Literal["info", "low", "medium", "high", "critical"]
    file: str
    message: str = Field(..., min_length=1)


class ReviewOutput(BaseModel):
    findings: list[Finding] = Field(default_factory=list)


class ReviewerAgent(RoleAgent):
    role = "reviewer"

    def system_prompt(self) -> str:
        return """You are the Reviewer of a test-driven development council.

The tests below pass. Review the implementation and tests for correctness
gaps the tests miss, security problems, error handling, maintainability and
test quality. Report each concern as a finding with a severity and the file
it refers to. Return an empty list if there is nothing to report."""

    async def review(self, run_id: str, artifacts: list[Artifact]) -> ReviewReport:
        try:
            prompt = self._build_prompt(
                "Review these files.",
                {"Files": render_files([(a.path, a.content) for a in artifacts])},
                ReviewOutput,
            )
            output = await self._invoke_structured(prompt, ReviewOutput)
        except Exception as e:
            logger.warning("Review failed, publishing without findings", error=str(e))
            return ReviewReport(run_id=run_id, warning=f"review unavailable: {e}")

        known = {a.path for a in artifacts}
        findings = tuple(
            ReviewFinding(Severity(f.severity), f.file, f.message.strip()) for f in output.findings
        )
        unknown = sorted({f.file for f in findings} - known)
        if unknown:
            logger.debug("Findings reference files outside the change", files=unknown)
        logger.info("Review complete", findings=len(findings))
        return ReviewReport(run_id=run_id, findings=findings)
