"""Core orchestration: the run state machine and its driver."""

from .orchestrator import Orchestrator, PipelineServices, RunContext
from .state_machine import State, StateContext, StateMachine, StateType, Transition

__all__ = [
    "Orchestrator",
    "PipelineServices",
    "RunContext",
    "State",
    "StateContext",
    "StateMachine",
    "StateType",
    "Transition",
]
