"""
Generator agents: one writes a test file per specification, the other writes
the implementation for a language given its tests.
"""

from pydantic import BaseModel, Field

from ..config.settings import AgentConfig, ToolchainConfig
from ..errors import GatewayError, GenerationFailed, ValidationFailed
from ..gateway.client import ModelGatewayClient
from ..models import Artifact, ArtifactKind, ContextBundle, TestSpec
from ..observability.logging import get_logger
from .base import ArtifactDraft, RoleAgent, render_files
from .paths import path_problem

logger = get_logger(__name__)


class GeneratedFile(BaseModel):
    path: str = Field(..., description="Relative path of the file inside the project")
    content: str = Field(..., min_length=1)


class GeneratedFiles(BaseModel):
    files: list[GeneratedFile] = Field(..., min_length=1)


class _GeneratorBase(RoleAgent):
    role = "generator"

    def __init__(
        self,
        gateway: ModelGatewayClient,
        config: AgentConfig,
        toolchains: dict[str, ToolchainConfig],
    ):
        super().__init__(gateway, config)
        self.toolchains = toolchains

    def _conventions(self, language: str) -> str:
        toolchain = self.toolchains.get(language)
        if toolchain is None:
            return ""
        return (
            f"Language: {language}\n"
            f"File extensions: {', '.join(toolchain.extensions)}\n"
            f"Test file patterns: {', '.join(toolchain.test_patterns)}\n"
            f"Test command: {' '.join(toolchain.test_command)}"
        )


class TestGeneratorAgent(_GeneratorBase):
    """Writes exactly one test file for one test specification."""

    __test__ = False

    def system_prompt(self) -> str:
        return """You are the Test Generator of a test-driven development council.

Write one self-contained automated test file for the given specification.
The implementation does not exist yet; import it from the module paths you
expect the implementation to use. Tests must fail against a missing or wrong
implementation and pass against a correct one."""

    async def generate(
        self,
        spec: TestSpec,
        context: ContextBundle,
        feature_description: str,
        reserved: frozenset[str] = frozenset(),
    ) -> ArtifactDraft:
        """Generate the test file for one spec. Paths in ``reserved`` are taken."""
        toolchain = self.toolchains.get(spec.language)

        def check(output: GeneratedFiles) -> str | None:
            if len(output.files) != 1:
                return f"expected exactly one test file, got {len(output.files)}"
            if output.files[0].path in reserved:
                return f"{output.files[0].path!r} is already used by another test"
            return path_problem(output.files[0].path, spec.language, toolchain, test=True)

        prompt = self._build_prompt(
            f"Write the test file for specification {spec.spec_id}.",
            {
                "Feature request": feature_description,
                "Specification": f"[{spec.language}] {spec.description}",
                "Conventions": self._conventions(spec.language),
                "Paths already taken": "\n".join(sorted(reserved)),
                "Reference material": self._clip("\n\n".join(context.for_spec(spec.spec_id))),
            },
            GeneratedFiles,
        )
        try:
            output = await self._invoke_structured(prompt, GeneratedFiles, check)
        except (ValidationFailed, GatewayError) as e:
            raise GenerationFailed(
                f"test generation for {spec.spec_id} failed: {e}", language=spec.language
            ) from e

        file = output.files[0]
        return ArtifactDraft(
            path=file.path, language=spec.language, content=file.content, kind=ArtifactKind.TEST
        )


class CodeGeneratorAgent(_GeneratorBase):
    """Writes the implementation files for one language."""

    def system_prompt(self) -> str:
        return """You are the Code Generator of a test-driven development council.

Write the implementation that makes the given tests pass. Return every
source file the tests import. Do not modify or return the test files."""

    async def generate(
        self,
        language: str,
        tests: list[Artifact],
        specs: list[TestSpec],
        context: ContextBundle,
        feature_description: str,
    ) -> list[ArtifactDraft]:
        toolchain = self.toolchains.get(language)
        test_paths = {t.path for t in tests}

        def check(output: GeneratedFiles) -> str | None:
            seen: set[str] = set()
            for file in output.files:
                if file.path in test_paths:
                    return f"{file.path!r} is a test file and must not be returned"
                if file.path in seen:
                    return f"{file.path!r} returned twice"
                seen.add(file.path)
                problem = path_problem(file.path, language, toolchain, test=False)
                if problem:
                    return problem
            return None

        prompt = self._build_prompt(
            f"Write the {language} implementation for these tests.",
            {
                "Feature request": feature_description,
                "Conventions": self._conventions(language),
                "Tests": render_files([(t.path, t.content) for t in tests]),
                "Reference material": self._clip(
                    "\n\n".join(context.for_specs([s.spec_id for s in specs]))
                ),
            },
            GeneratedFiles,
        )
        try:
            output = await self._invoke_structured(prompt, GeneratedFiles, check)
        except (ValidationFailed, GatewayError) as e:
            raise GenerationFailed(
                f"code generation for {language} failed: {e}", language=language
            ) from e

        logger.info("Code generated", language=language, files=len(output.files))
        return [
            ArtifactDraft(
                path=f.path, language=language, content=f.content, kind=ArtifactKind.SOURCE
            )
            for f in output.files
        ]
