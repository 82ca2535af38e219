"""
Agent factory: configuration-driven construction of role agents.
"""

from ..config.settings import Settings
from ..gateway.client import ModelGatewayClient
from ..observability.logging import get_logger
from .base import RoleAgent
from .context import ContextGathererAgent
from .generator import CodeGeneratorAgent, TestGeneratorAgent
from .planner import PlannerAgent
from .refiner import RefinerAgent
from .reviewer import ReviewerAgent

logger = get_logger(__name__)


class AgentFactory:
    """Builds and caches one agent per role name."""

    def __init__(self, settings: Settings, gateway: ModelGatewayClient):
        self.settings = settings
        self.gateway = gateway
        self._agent_cache: dict[str, RoleAgent] = {}

    def create_agent(self, name: str) -> RoleAgent:
        config = self.settings.agents
        toolchains = self.settings.harness.toolchains
        if name == "planner":
            return PlannerAgent(self.gateway, config)
        if name == "context":
            return ContextGathererAgent(self.gateway, config)
        if name == "test_generator":
            return TestGeneratorAgent(self.gateway, config, toolchains)
        if name == "code_generator":
            return CodeGeneratorAgent(self.gateway, config, toolchains)
        if name == "refiner":
            return RefinerAgent(self.gateway, config, toolchains)
        if name == "reviewer":
            return ReviewerAgent(self.gateway, config)
        raise ValueError(f"Unknown agent: {name}. Available: {self.available()}")

    def get(self, name: str) -> RoleAgent:
        if name not in self._agent_cache:
            self._agent_cache[name] = self.create_agent(name)
            logger.debug("Created agent", agent=name)
        return self._agent_cache[name]

    @property
    def planner(self) -> PlannerAgent:
        return self.get("planner")

    @property
    def context(self) -> ContextGathererAgent:
        return self.get("context")

    @property
    def test_generator(self) -> TestGeneratorAgent:
        return self.get("test_generator")

    @property
    def code_generator(self) -> CodeGeneratorAgent:
        return self.get("code_generator")

    @property
    def refiner(self) -> RefinerAgent:
        return self.get("refiner")

    @property
    def reviewer(self) -> ReviewerAgent:
        return self.get("reviewer")

    @staticmethod
    def available() -> list[str]:
        return ["planner", "context", "test_generator", "code_generator", "refiner", "reviewer"]
