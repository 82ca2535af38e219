"""
Role agent base.

A role agent turns one pipeline responsibility into a model gateway
interaction: it renders a role-specific prompt, asks for output in a JSON
schema, and validates the result. Output that fails its schema (or a
semantic check supplied by the agent) is re-requested up to
``AgentConfig.parse_retries`` more times before ``ValidationFailed`` is raised.
"""

import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from pydantic import BaseModel

from ..config.settings import AgentConfig
from ..errors import ValidationFailed
from ..gateway.client import ModelGatewayClient
from ..models import ArtifactKind
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector

logger = get_logger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


@dataclass(frozen=True)
class ArtifactDraft:
    """File content proposed by an agent, not yet versioned."""

    path: str
    language: str
    content: str
    kind: ArtifactKind


class RoleAgent(ABC):
    """Base class for the five pipeline roles."""

    role: str = ""

    def __init__(self, gateway: ModelGatewayClient, config: AgentConfig):
        self.gateway = gateway
        self.config = config

    @abstractmethod
    def system_prompt(self) -> str:
        """Role instructions placed at the top of every prompt."""

    def _build_prompt(
        self, task: str, sections: dict[str, str], schema: type[BaseModel]
    ) -> str:
        parts = [self.system_prompt().strip(), ""]
        for title, body in sections.items():
            if body and body.strip():
                parts.append(f"## {title}\n{body.strip()}\n")
        parts.append(f"## Task\n{task.strip()}\n")
        parts.append(
            "Respond with a single JSON object matching this schema and nothing else:\n"
            + json.dumps(schema.model_json_schema(), indent=2)
        )
        return "\n".join(parts)

    def _clip(self, text: str) -> str:
        limit = self.config.max_context_chars
        return text if len(text) <= limit else text[:limit] + "\n...[truncated]"

    async def _invoke_structured(
        self,
        prompt: str,
        schema: type[SchemaT],
        check: Callable[[SchemaT], str | None] | None = None,
    ) -> SchemaT:
        """Invoke the gateway until the output parses and passes ``check``."""
        attempts = self.config.parse_retries + 1
        problem = ""
        last_text = ""
        for attempt in range(1, attempts + 1):
            request = prompt
            if problem:
                request += (
                    f"\n\nYour previous answer was rejected: {problem}\n"
                    "Answer again following the schema exactly."
                )
            response = await self.gateway.invoke(self.role, request, schema)
            last_text = response.text
            parsed = response.parsed
            if parsed is None:
                problem = "the output was not valid JSON for the schema"
            else:
                problem = check(parsed) if check else None
                if not problem:
                    get_metrics_collector().record_agent_call(self.role, True)
                    return parsed
            logger.warning(
                "Rejected model output",
                role=self.role,
                attempt=attempt,
                of=attempts,
                problem=problem,
            )

        get_metrics_collector().record_agent_call(self.role, False)
        raise ValidationFailed(
            f"{self.role} output invalid after {attempts} attempt(s): {problem}",
            role=self.role,
            raw_text=last_text,
        )


def render_files(files: list[tuple[str, str]]) -> str:
    """Render (path, content) pairs as fenced blocks for a prompt."""
    return "\n\n".join(f"### {path}\n```\n{content}\n```" for path, content in files)
