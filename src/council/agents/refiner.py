"""
Refiner agent: proposes new versions of failing artifacts.

A refinement that changes nothing is rejected with ``RefinementFailed`` so a
language cannot loop without progress.
"""

from pydantic import BaseModel, Field

from ..config.settings import AgentConfig, ToolchainConfig
from ..errors import GatewayError, RefinementFailed, ValidationFailed
from ..gateway.client import ModelGatewayClient
from ..models import Artifact, ArtifactKind, ContextBundle, Outcome, TestExecutionResult
from ..observability.logging import get_logger
from .base import ArtifactDraft, RoleAgent, render_files
from .paths import path_problem

logger = get_logger(__name__)


class RefinedFile(BaseModel):
    path: str
    content: str = Field(..., min_length=1)


class RefinerOutput(BaseModel):
    rationale: str = ""
    files: list[RefinedFile] = Field(..., min_length=1)


class RefinerAgent(RoleAgent):
    role = "refiner"

    def __init__(
        self,
        gateway: ModelGatewayClient,
        config: AgentConfig,
        toolchains: dict[str, ToolchainConfig],
    ):
        super().__init__(gateway, config)
        self.toolchains = toolchains

    def system_prompt(self) -> str:
        return """You are the Refiner of a test-driven development council.

A test suite failed. Diagnose the failure and return full new contents for
the files that need to change. Prefer fixing the implementation; change a
test only when the test itself is wrong. When the failure is an environment
error (missing dependency, syntax error, crash) fix the cause of that error."""

    async def refine(
        self,
        language: str,
        artifacts: list[Artifact],
        result: TestExecutionResult,
        context: ContextBundle,
    ) -> list[ArtifactDraft]:
        toolchain = self.toolchains.get(language)
        current = {a.path: a for a in artifacts}

        def check(output: RefinerOutput) -> str | None:
            for file in output.files:
                if file.path in current:
                    continue
                problem = path_problem(file.path, language, toolchain, test=False)
                if problem:
                    return problem
            return None

        failures = "\n".join(f"- {f.test_name}: {f.message}" for f in result.failures)
        kind = "assertion failures" if result.outcome is Outcome.FAILED else "environment error"
        prompt = self._build_prompt(
            f"Fix the {language} suite (attempt {result.attempt} ended with {kind}).",
            {
                "Failures": failures,
                "Runner output": self._clip(result.diagnostics),
                "Files": render_files([(a.path, a.content) for a in artifacts]),
                "Reference material": self._clip("\n\n".join(context.for_spec("*"))),
            },
            RefinerOutput,
        )
        try:
            output = await self._invoke_structured(prompt, RefinerOutput, check)
        except (ValidationFailed, GatewayError) as e:
            raise RefinementFailed(f"refinement for {language} failed: {e}", language) from e

        drafts = []
        for file in output.files:
            existing = current.get(file.path)
            if existing is not None and existing.content == file.content:
                continue
            # New files are always sources; check() rejects new test paths.
            file_kind = existing.kind if existing is not None else ArtifactKind.SOURCE
            drafts.append(
                ArtifactDraft(
                    path=file.path, language=language, content=file.content, kind=file_kind
                )
            )

        if not drafts:
            raise RefinementFailed(
                f"refinement for {language} returned content identical to the failing input",
                language,
            )
        logger.info(
            "Refinement proposed", language=language, files=[d.path for d in drafts]
        )
        return drafts
