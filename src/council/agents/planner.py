"""
Planner agent: breaks a feature request into per-language test specifications.
"""

from pydantic import BaseModel, Field

from ..errors import GatewayError, PlanningFailed, ValidationFailed
from ..models import Plan, TestSpec, new_id
from ..observability.logging import get_logger
from .base import RoleAgent

logger = get_logger(__name__)


class PlannedTest(BaseModel):
    language: str = Field(..., min_length=1, description="Target language tag")
    description: str = Field(..., min_length=1, description="Behavior the test must verify")


class PlannerOutput(BaseModel):
    test_specs: list[PlannedTest] = Field(..., min_length=1)


class PlannerAgent(RoleAgent):
    """Produces the immutable Plan for a run."""

    role = "planner"

    def system_prompt(self) -> str:
        return """You are the Planning Agent of a test-driven development council.

Break the feature request into an ordered list of test specifications.
Each specification targets exactly one language from the allowed set and
describes one observable behavior in plain language. Cover every allowed
language with at least one specification. Do not write code."""

    async def plan(self, run_id: str, feature_description: str, languages: set[str]) -> Plan:
        allowed = sorted(languages)

        def check(output: PlannerOutput) -> str | None:
            stray = sorted({t.language for t in output.test_specs} - languages)
            if stray:
                return f"languages {stray} are not in the allowed set {allowed}"
            missing = sorted(languages - {t.language for t in output.test_specs})
            if missing:
                return f"no test specification for languages {missing}"
            return None

        prompt = self._build_prompt(
            "Produce the test specifications.",
            {
                "Feature request": feature_description,
                "Allowed languages": ", ".join(allowed),
            },
            PlannerOutput,
        )
        try:
            output = await self._invoke_structured(prompt, PlannerOutput, check)
        except (ValidationFailed, GatewayError) as e:
            raise PlanningFailed(str(e)) from e

        specs = tuple(
            TestSpec(spec_id=f"spec-{i}", language=t.language, description=t.description.strip())
            for i, t in enumerate(output.test_specs, start=1)
        )
        plan = Plan(plan_id=new_id("plan"), run_id=run_id, test_specs=specs)
        logger.info("Plan produced", plan_id=plan.plan_id, specs=len(specs))
        return plan
