"""
Role agents: Planner, Context-Gatherer, Generators, Refiner and Reviewer.

Each wraps one model gateway interaction with a role prompt and an output
contract.
"""

from .base import ArtifactDraft, RoleAgent
from .context import ContextGathererAgent
from .factory import AgentFactory
from .generator import CodeGeneratorAgent, TestGeneratorAgent
from .planner import PlannerAgent
from .refiner import RefinerAgent
from .reviewer import ReviewerAgent

__all__ = [
    "ArtifactDraft",
    "RoleAgent",
    "AgentFactory",
    "PlannerAgent",
    "ContextGathererAgent",
    "TestGeneratorAgent",
    "CodeGeneratorAgent",
    "RefinerAgent",
    "ReviewerAgent",
]
