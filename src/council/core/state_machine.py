"""
State machine for run execution flow with guarded transitions.

- States execute and name the state to move to next
- Transitions are declared up front and validated; ``*`` matches any source
- Terminal states (FINAL or ERROR) stop the machine when entered
- A cancellation event is honored at every state boundary
- Every transition is reported to an optional hook (used for persistence)
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..observability.logging import get_logger

logger = get_logger(__name__)

ANY_STATE = "*"


class StateType(Enum):
    """Types of states in the state machine."""

    INITIAL = "initial"
    INTERMEDIATE = "intermediate"
    FINAL = "final"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (StateType.FINAL, StateType.ERROR)


@dataclass
class StateContext:
    """Context data passed between states."""

    data: dict[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class State(ABC):
    """Abstract base class for state machine states."""

    def __init__(self, name: str, state_type: StateType = StateType.INTERMEDIATE):
        self.name = name
        self.state_type = state_type
        self.entry_time: float | None = None

    @abstractmethod
    async def execute(self, context: StateContext) -> str:
        """Run the state's work and return the name of the next state."""
        ...

    async def on_entry(self, context: StateContext) -> None:
        self.entry_time = time.time()
        logger.debug(f"Entering state: {self.name}")

    async def on_exit(self, context: StateContext) -> None:
        if self.entry_time:
            logger.debug(f"Exiting state: {self.name} ({time.time() - self.entry_time:.2f}s)")

    def __str__(self) -> str:
        return f"State({self.name})"


class TerminalState(State):
    """A state the machine stops in; it has no work of its own."""

    async def execute(self, context: StateContext) -> str:
        return self.name


@dataclass
class Transition:
    """State transition with optional guard condition."""

    from_state: str
    to_state: str
    guard: Callable[[StateContext], bool] | None = None

    def matches(self, from_state: str, to_state: str) -> bool:
        return self.from_state in (from_state, ANY_STATE) and self.to_state == to_state

    def can_transition(self, context: StateContext) -> bool:
        return self.guard(context) if self.guard else True


TransitionHook = Callable[[str, str, StateContext], Awaitable[None] | None]


class StateMachine:
    """Finite state machine driving one run."""

    def __init__(
        self,
        name: str,
        initial_state: str,
        context: StateContext | None = None,
        on_transition: TransitionHook | None = None,
        cancelled_state: str | None = None,
        error_state: str | None = None,
    ):
        self.name = name
        self.initial_state = initial_state
        self.context = context or StateContext()
        self.on_transition = on_transition
        self.cancelled_state = cancelled_state
        self.error_state = error_state
        self.current_state: str | None = None
        self.states: dict[str, State] = {}
        self.transitions: list[Transition] = []
        self.state_history: list[str] = []
        self.is_running = False

    def add_state(self, state: State) -> None:
        self.states[state.name] = state

    def add_transition(self, transition: Transition) -> None:
        self.transitions.append(transition)

    def can_transition(self, to_state: str) -> bool:
        if self.current_state is None:
            return False
        return any(
            t.matches(self.current_state, to_state) and t.can_transition(self.context)
            for t in self.transitions
        )

    async def start(self) -> None:
        if self.is_running:
            raise RuntimeError("State machine is already running")
        if self.initial_state not in self.states:
            raise ValueError(f"Initial state '{self.initial_state}' not found")

        self.is_running = True
        self.current_state = self.initial_state
        self.state_history = [self.initial_state]
        logger.info(f"Starting state machine '{self.name}' in state '{self.initial_state}'")
        await self.states[self.current_state].on_entry(self.context)

    async def step(self) -> bool:
        """Execute the current state once. Returns False once the machine has stopped."""
        if not self.is_running or not self.current_state:
            return False
        if await self._stop_if_cancelled():
            return False

        state = self.states[self.current_state]
        try:
            next_state = await state.execute(self.context)
        except Exception as e:
            logger.exception(f"Error executing state '{self.current_state}'", error=str(e))
            await self._transition_to_error(e)
            return False

        # Work finished after cancellation is discarded.
        if await self._stop_if_cancelled():
            return False

        if next_state != self.current_state and not await self.transition_to(next_state):
            await self._transition_to_error(
                RuntimeError(f"No valid transition from '{self.current_state}' to '{next_state}'")
            )
            return False

        if self.states[self.current_state].state_type.is_terminal:
            await self.stop()
            return False
        return True

    async def transition_to(self, state_name: str) -> bool:
        """Move to ``state_name`` if a declared transition allows it."""
        if not self.current_state:
            raise RuntimeError("State machine not started")
        if state_name not in self.states:
            raise ValueError(f"State '{state_name}' not found")
        if not self.can_transition(state_name):
            logger.warning(f"No valid transition from '{self.current_state}' to '{state_name}'")
            return False
        await self._execute_transition(state_name)
        return True

    async def _execute_transition(self, new_state: str) -> None:
        old_state = self.current_state
        logger.debug(f"Transitioning from '{old_state}' to '{new_state}'")
        if old_state and old_state in self.states:
            await self.states[old_state].on_exit(self.context)

        self.current_state = new_state
        self.state_history.append(new_state)

        if self.on_transition is not None:
            result = self.on_transition(old_state or "", new_state, self.context)
            if hasattr(result, "__await__"):
                await result
        await self.states[new_state].on_entry(self.context)

    async def _stop_if_cancelled(self) -> bool:
        if not self.context.cancelled:
            return False
        logger.info(f"State machine '{self.name}' cancelled in state '{self.current_state}'")
        if self.cancelled_state and self.current_state != self.cancelled_state:
            await self._execute_transition(self.cancelled_state)
        await self.stop()
        return True

    async def _transition_to_error(self, error: Exception) -> None:
        self.context.set("error", error)
        self.context.set("error_state", self.current_state)
        if self.error_state and self.error_state in self.states:
            await self._execute_transition(self.error_state)
        else:
            logger.error(f"No error state defined, stopping state machine: {error}")
        await self.stop()

    async def run_to_completion(self, max_steps: int = 100) -> StateContext:
        if not self.is_running:
            await self.start()
        if self.states[self.current_state].state_type.is_terminal:
            await self.stop()
            return self.context

        steps = 0
        while self.is_running and steps < max_steps:
            if not await self.step():
                break
            steps += 1

        if self.is_running:
            await self._transition_to_error(
                RuntimeError(f"State machine '{self.name}' exceeded {max_steps} steps")
            )
        return self.context

    async def stop(self) -> None:
        if not self.is_running:
            return
        logger.info(f"Stopping state machine '{self.name}' in state '{self.current_state}'")
        if self.current_state and self.current_state in self.states:
            await self.states[self.current_state].on_exit(self.context)
        self.is_running = False

    def get_state_history(self) -> list[str]:
        return self.state_history.copy()
