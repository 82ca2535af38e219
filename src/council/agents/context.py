"""
Context-gathering agent.

Context is an optimization: any failure yields an empty bundle and a warning,
never a failed run.
"""

from pydantic import BaseModel, Field

from ..models import SHARED_CONTEXT_KEY, ContextBundle, Plan
from ..observability.logging import get_logger
from .base import RoleAgent

logger = get_logger(__name__)


class ContextEntry(BaseModel):
    spec_id: str = Field(..., description=f"Test spec id, or '{SHARED_CONTEXT_KEY}' for all")
    snippets: list[str] = Field(default_factory=list)


class ContextOutput(BaseModel):
    entries: list[ContextEntry] = Field(default_factory=list)


class ContextGathererAgent(RoleAgent):
    role = "context"

    def system_prompt(self) -> str:
        return """You are the Context Agent of a test-driven development council.

For each test specification, collect short reference material that will help
another agent write the test and the implementation: API conventions, data
shapes, relevant library usage, edge cases worth covering. Keep snippets
concise. Use the spec id '*' for material relevant to the whole plan."""

    async def gather(self, plan: Plan, feature_description: str) -> ContextBundle:
        try:
            return await self._gather(plan, feature_description)
        except Exception as e:
            logger.warning(
                "Context gathering failed, continuing with empty bundle",
                plan_id=plan.plan_id,
                error=f"{type(e).__name__}: {e}",
            )
            return ContextBundle(plan_id=plan.plan_id)

    async def _gather(self, plan: Plan, feature_description: str) -> ContextBundle:
        specs = "\n".join(
            f"- {s.spec_id} [{s.language}]: {s.description}" for s in plan.test_specs
        )
        prompt = self._build_prompt(
            "Collect reference material for these specifications.",
            {"Feature request": feature_description, "Test specifications": specs},
            ContextOutput,
        )
        output = await self._invoke_structured(prompt, ContextOutput)

        known = {s.spec_id for s in plan.test_specs} | {SHARED_CONTEXT_KEY}
        budget = self.config.max_context_chars
        entries: dict[str, list[str]] = {}
        for entry in output.entries:
            if entry.spec_id not in known:
                logger.debug("Dropping context for unknown spec", spec_id=entry.spec_id)
                continue
            for snippet in entry.snippets:
                snippet = snippet.strip()
                if not snippet or len(snippet) > budget:
                    continue
                budget -= len(snippet)
                entries.setdefault(entry.spec_id, []).append(snippet)

        bundle = ContextBundle(
            plan_id=plan.plan_id, entries={k: tuple(v) for k, v in entries.items()}
        )
        logger.info("Context gathered", plan_id=plan.plan_id, keys=len(bundle.entries))
        return bundle
