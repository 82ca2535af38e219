"""
Tests for the state machine driving runs.

Tests cover:
- Declared transitions and guards
- Wildcard transitions
- Error and cancellation states
- The transition hook
"""

import asyncio

import pytest

from council.core.state_machine import (
    ANY_STATE,
    State,
    StateContext,
    StateMachine,
    StateType,
    TerminalState,
    Transition,
)


class MockState(State):
    """Concrete State returning a fixed next state."""

    def __init__(self, name, next_state=None, state_type=StateType.INTERMEDIATE, error=None):
        super().__init__(name, state_type)
        self.next_state = next_state
        self.error = error
        self.executions = 0

    async def execute(self, context: StateContext) -> str:
        self.executions += 1
        if self.error:
            raise self.error
        return self.next_state or self.name


def build_machine(states, transitions, **kwargs) -> StateMachine:
    machine = StateMachine("test", initial_state=states[0].name, **kwargs)
    for state in states:
        machine.add_state(state)
    for transition in transitions:
        machine.add_transition(transition)
    return machine


class TestTransitions:
    @pytest.mark.asyncio
    async def test_runs_declared_path_to_final_state(self):
        machine = build_machine(
            [MockState("a", "b"), MockState("b", "done"), TerminalState("done", StateType.FINAL)],
            [Transition("a", "b"), Transition("b", "done")],
        )

        await machine.run_to_completion()

        assert machine.current_state == "done"
        assert machine.get_state_history() == ["a", "b", "done"]
        assert not machine.is_running

    @pytest.mark.asyncio
    async def test_undeclared_transition_goes_to_error_state(self):
        machine = build_machine(
            [MockState("a", "b"), MockState("b"), TerminalState("failed", StateType.ERROR)],
            [Transition(ANY_STATE, "failed")],
            error_state="failed",
        )

        context = await machine.run_to_completion()

        assert machine.current_state == "failed"
        assert "No valid transition" in str(context.get("error"))
        assert context.get("error_state") == "a"

    @pytest.mark.asyncio
    async def test_guard_blocks_transition(self):
        machine = build_machine(
            [MockState("a", "b"), MockState("b")],
            [Transition("a", "b", guard=lambda ctx: ctx.get("ready", False))],
        )
        await machine.start()

        assert machine.can_transition("b") is False
        machine.context.set("ready", True)
        assert machine.can_transition("b") is True

    @pytest.mark.asyncio
    async def test_transition_to_unknown_state_raises(self):
        machine = build_machine([MockState("a")], [])
        await machine.start()

        with pytest.raises(ValueError):
            await machine.transition_to("nowhere")

    @pytest.mark.asyncio
    async def test_start_twice_raises(self):
        machine = build_machine([MockState("a")], [])
        await machine.start()

        with pytest.raises(RuntimeError):
            await machine.start()


class TestErrorsAndCancellation:
    @pytest.mark.asyncio
    async def test_exception_in_state_records_error(self):
        boom = RuntimeError("boom")
        machine = build_machine(
            [MockState("a", error=boom), TerminalState("failed", StateType.ERROR)],
            [],
            error_state="failed",
        )

        context = await machine.run_to_completion()

        assert machine.current_state == "failed"
        assert context.get("error") is boom

    @pytest.mark.asyncio
    async def test_cancellation_before_step(self):
        a = MockState("a", "b")
        machine = build_machine(
            [a, MockState("b"), TerminalState("cancelled", StateType.FINAL)],
            [Transition("a", "b")],
            cancelled_state="cancelled",
        )
        machine.context.cancel_event.set()

        await machine.run_to_completion()

        assert machine.current_state == "cancelled"
        assert a.executions == 0

    @pytest.mark.asyncio
    async def test_work_finished_after_cancellation_is_discarded(self):
        context = StateContext()

        class CancellingState(MockState):
            async def execute(self, ctx):
                ctx.cancel_event.set()
                return "b"

        machine = build_machine(
            [CancellingState("a"), MockState("b"), TerminalState("cancelled", StateType.FINAL)],
            [Transition("a", "b")],
            context=context,
            cancelled_state="cancelled",
        )

        await machine.run_to_completion()

        assert machine.get_state_history() == ["a", "cancelled"]

    @pytest.mark.asyncio
    async def test_step_budget_exceeded(self):
        machine = build_machine(
            [MockState("a", "b"), MockState("b", "a"), TerminalState("failed", StateType.ERROR)],
            [Transition("a", "b"), Transition("b", "a"), Transition(ANY_STATE, "failed")],
            error_state="failed",
        )

        context = await machine.run_to_completion(max_steps=5)

        assert machine.current_state == "failed"
        assert "exceeded 5 steps" in str(context.get("error"))


class TestTransitionHook:
    @pytest.mark.asyncio
    async def test_sync_and_async_hooks_see_every_transition(self):
        seen = []

        def record(old, new, ctx):
            seen.append((old, new))

        machine = build_machine(
            [MockState("a", "b"), MockState("b", "done"), TerminalState("done", StateType.FINAL)],
            [Transition("a", "b"), Transition("b", "done")],
            on_transition=record,
        )
        await machine.run_to_completion()
        assert seen == [("a", "b"), ("b", "done")]

        seen_async = []

        async def record_async(old, new, ctx):
            await asyncio.sleep(0)
            seen_async.append(new)

        machine = build_machine(
            [MockState("a", "done"), TerminalState("done", StateType.FINAL)],
            [Transition("a", "done")],
            on_transition=record_async,
        )
        await machine.run_to_completion()
        assert seen_async == ["done"]
