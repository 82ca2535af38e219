"""
Run orchestrator: drives each run through the test-first pipeline.

    planning -> gathering_context -> generating_tests -> generating_code
      -> running_tests <-> refining -> reviewing -> publishing -> succeeded

Every run is its own state machine. Within running_tests each target language
is an independent verification track: test, then refine and re-test only that
language, up to ``orchestrator.max_attempts`` executions. The run-level state
shows ``refining`` while any track is refining.

Stage failures end in ``failed`` with structured diagnostics; cancellation
ends in ``cancelled`` with status ``abandoned``. Every transition is
persisted, so a run interrupted by a restart can be resumed from its last
state without redoing stages whose outputs were stored.
"""

import asyncio
from dataclasses import dataclass, field

from ..agents.base import ArtifactDraft
from ..agents.factory import AgentFactory
from ..config.settings import Settings
from ..errors import GenerationFailed, InvalidRunRequest, RefinementFailed, StageError
from ..harness.harness import TestHarness
from ..models import (
    Artifact,
    ArtifactKind,
    ArtifactStage,
    ContextBundle,
    LanguageStatus,
    LanguageTrack,
    Plan,
    ReviewReport,
    Run,
    RunFailure,
    RunState,
    RunStatus,
    TestExecutionResult,
    new_id,
    utcnow,
)
from ..observability.logging import bind_trace_id, get_logger
from ..observability.metrics import get_metrics_collector
from ..observability.probe import clear_trace_metrics, probe
from ..publisher.publisher import ChangePublisher
from ..storage.runs import RunRepository
from ..storage.versioned import VersionedArtifactStore
from .audit import create_run_snapshot
from .determinism import config_hash, get_config_hash
from .state_machine import (
    ANY_STATE,
    State,
    StateContext,
    StateMachine,
    StateType,
    TerminalState,
    Transition,
)

logger = get_logger(__name__)


@dataclass
class PipelineServices:
    """Collaborators shared by the pipeline states."""

    settings: Settings
    agents: AgentFactory
    artifacts: VersionedArtifactStore
    runs: RunRepository
    harness: TestHarness
    publisher: ChangePublisher


@dataclass
class RunContext(StateContext):
    """State context of one run."""

    run: Run | None = None
    plan: Plan | None = None
    bundle: ContextBundle | None = None
    review: ReviewReport | None = None
    machine: StateMachine | None = None
    refining: int = 0
    track_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def fail(self, error: StageError) -> str:
        self.run.failure = RunFailure(
            stage=error.stage,
            reason=str(error),
            error_type=type(error).__name__,
            language=error.language,
        )
        return RunState.FAILED.value


def tests_for(services: PipelineServices, run: Run, plan: Plan, language: str) -> list[Artifact]:
    """Latest version of the test file of every spec of ``language``."""
    tests = []
    for spec in plan.specs_for(language):
        path = run.spec_tests.get(spec.spec_id)
        artifact = services.artifacts.latest(run.run_id, path) if path else None
        if artifact is not None and artifact not in tests:
            tests.append(artifact)
    return tests


def sources_for(services: PipelineServices, run: Run, language: str) -> list[Artifact]:
    return services.artifacts.latest_for_run(run.run_id, language, ArtifactKind.SOURCE)


def final_artifacts(services: PipelineServices, run: Run, plan: Plan) -> list[Artifact]:
    artifacts = []
    for language in sorted(run.target_languages):
        artifacts += tests_for(services, run, plan, language)
        artifacts += sources_for(services, run, language)
    return artifacts


async def store_drafts(
    services: PipelineServices, run_id: str, drafts: list[ArtifactDraft], stage: ArtifactStage
) -> list[Artifact]:
    return [
        await services.artifacts.append(
            run_id, d.path, d.language, d.content, stage=stage, kind=d.kind
        )
        for d in drafts
    ]


class PipelineState(State):
    def __init__(
        self,
        state: RunState,
        services: PipelineServices,
        state_type: StateType = StateType.INTERMEDIATE,
    ):
        super().__init__(state.value, state_type)
        self.services = services


class PlanningState(PipelineState):
    """Decompose the feature into per-language test specs."""

    def __init__(self, services: PipelineServices):
        super().__init__(RunState.PLANNING, services, StateType.INITIAL)

    async def execute(self, context: RunContext) -> str:
        run = context.run
        plan = self.services.runs.load_plan(run.run_id)
        if plan is None:
            try:
                plan = await self.services.agents.planner.plan(
                    run.run_id, run.feature_description, set(run.target_languages)
                )
            except StageError as e:
                if context.cancelled:
                    return RunState.CANCELLED.value
                return context.fail(e)
            if context.cancelled:
                return RunState.CANCELLED.value
            self.services.runs.save_plan(plan)
        context.plan = plan
        return RunState.GATHERING_CONTEXT.value


class GatheringContextState(PipelineState):
    """Collect reference material; an empty bundle is acceptable."""

    def __init__(self, services: PipelineServices):
        super().__init__(RunState.GATHERING_CONTEXT, services)

    async def execute(self, context: RunContext) -> str:
        run = context.run
        bundle = self.services.runs.load_context(run.run_id)
        if bundle is None:
            bundle = await self.services.agents.context.gather(
                context.plan, run.feature_description
            )
            if context.cancelled:
                return RunState.CANCELLED.value
            self.services.runs.save_context(run.run_id, bundle)
        context.bundle = bundle
        return RunState.GENERATING_TESTS.value


class GeneratingTestsState(PipelineState):
    """One test file per spec, generated concurrently."""

    def __init__(self, services: PipelineServices):
        super().__init__(RunState.GENERATING_TESTS, services)

    async def execute(self, context: RunContext) -> str:
        run = context.run
        agent = self.services.agents.test_generator
        pending = [s for s in context.plan.test_specs if s.spec_id not in run.spec_tests]
        limit = asyncio.Semaphore(self.services.settings.orchestrator.max_parallel_generations)

        async def generate(spec):
            async with limit:
                return await agent.generate(spec, context.bundle, run.feature_description)

        results = await asyncio.gather(*(generate(s) for s in pending), return_exceptions=True)
        if context.cancelled:
            return RunState.CANCELLED.value
        for result in results:
            if isinstance(result, GenerationFailed):
                return context.fail(result)
            if isinstance(result, BaseException):
                raise result

        taken = set(run.spec_tests.values())
        for spec, draft in zip(pending, results, strict=True):
            if draft.path in taken:
                logger.info(
                    "Test path collision, regenerating", spec_id=spec.spec_id, path=draft.path
                )
                try:
                    draft = await agent.generate(
                        spec, context.bundle, run.feature_description, reserved=frozenset(taken)
                    )
                except GenerationFailed as e:
                    return context.fail(e)
                if context.cancelled:
                    return RunState.CANCELLED.value
            await store_drafts(self.services, run.run_id, [draft], ArtifactStage.TESTS)
            taken.add(draft.path)
            run.spec_tests[spec.spec_id] = draft.path
            self.services.runs.save_run(run)

        return RunState.GENERATING_CODE.value


class GeneratingCodeState(PipelineState):
    """Implementation files per language, written against that language's tests."""

    def __init__(self, services: PipelineServices):
        super().__init__(RunState.GENERATING_CODE, services)

    async def execute(self, context: RunContext) -> str:
        run, plan = context.run, context.plan
        agent = self.services.agents.code_generator
        pending = [
            language
            for language in sorted(run.target_languages)
            if not sources_for(self.services, run, language)
        ]
        limit = asyncio.Semaphore(self.services.settings.orchestrator.max_parallel_generations)

        async def generate(language):
            async with limit:
                return await agent.generate(
                    language,
                    tests_for(self.services, run, plan, language),
                    plan.specs_for(language),
                    context.bundle,
                    run.feature_description,
                )

        results = await asyncio.gather(
            *(generate(lang) for lang in pending), return_exceptions=True
        )
        if context.cancelled:
            return RunState.CANCELLED.value
        for result in results:
            if isinstance(result, GenerationFailed):
                return context.fail(result)
            if isinstance(result, BaseException):
                raise result

        for drafts in results:
            await store_drafts(self.services, run.run_id, drafts, ArtifactStage.CODE)
        return RunState.RUNNING_TESTS.value


class RunningTestsState(PipelineState):
    """Verify every language independently until it passes or runs out of attempts."""

    def __init__(self, services: PipelineServices):
        super().__init__(RunState.RUNNING_TESTS, services)

    async def execute(self, context: RunContext) -> str:
        run = context.run
        pending = [t for t in run.tracks.values() if not t.is_settled]
        results = await asyncio.gather(
            *(self._verify(context, track) for track in pending), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        if context.cancelled:
            return RunState.CANCELLED.value
        if all(t.status is LanguageStatus.PASSED for t in run.tracks.values()):
            return RunState.REVIEWING.value

        exhausted = [t for t in run.tracks.values() if t.status is LanguageStatus.EXHAUSTED]
        run.failure = RunFailure(
            stage=RunState.RUNNING_TESTS.value,
            reason="; ".join(self._describe(t) for t in exhausted),
            error_type="AttemptsExhausted",
            language=exhausted[0].language if len(exhausted) == 1 else None,
        )
        return RunState.FAILED.value

    @staticmethod
    def _describe(track: LanguageTrack) -> str:
        if track.refine_error:
            return f"{track.language}: {track.refine_error}"
        if track.last_result is not None:
            return track.last_result.summary()
        return f"{track.language}: no test execution recorded"

    async def _verify(self, context: RunContext, track: LanguageTrack) -> None:
        run, plan = context.run, context.plan
        services = self.services
        max_attempts = services.settings.orchestrator.max_attempts

        while not context.cancelled:
            tests = tests_for(services, run, plan, track.language)
            code = sources_for(services, run, track.language)
            if track.status is LanguageStatus.REFINING:
                # Resumed after an interruption: refine the recorded failure.
                result = track.last_result
            else:
                attempt = track.attempts + 1
                track.status = LanguageStatus.RUNNING
                result = await services.harness.run(
                    track.language, tests, code, run_id=run.run_id, attempt=attempt
                )
                if context.cancelled:
                    return

                services.runs.save_result(result)
                track.attempts = attempt
                track.last_result = result
                if result.passed:
                    track.status = LanguageStatus.PASSED
                elif attempt >= max_attempts:
                    track.status = LanguageStatus.EXHAUSTED
                else:
                    track.status = LanguageStatus.REFINING
                services.runs.save_run(run)
                logger.info(
                    "Language attempt recorded",
                    language=track.language,
                    attempt=attempt,
                    outcome=result.outcome.value,
                )
                if track.is_settled:
                    return

            await self._set_refining(context, +1)
            try:
                drafts = await services.agents.refiner.refine(
                    track.language, [*tests, *code], result, context.bundle
                )
            except RefinementFailed as e:
                track.refine_error = str(e)
                track.status = LanguageStatus.EXHAUSTED
                services.runs.save_run(run)
                return
            finally:
                await self._set_refining(context, -1)

            if context.cancelled:
                return
            await store_drafts(services, run.run_id, drafts, ArtifactStage.REFINE)
            track.status = LanguageStatus.PENDING

    @staticmethod
    async def _set_refining(context: RunContext, delta: int) -> None:
        async with context.track_lock:
            context.refining += delta
            if delta > 0 and context.refining == 1:
                await context.machine.transition_to(RunState.REFINING.value)
            elif delta < 0 and context.refining == 0:
                await context.machine.transition_to(RunState.RUNNING_TESTS.value)


class RefiningState(PipelineState):
    """Entered from running_tests while a track refines; resumes verification."""

    def __init__(self, services: PipelineServices):
        super().__init__(RunState.REFINING, services)

    async def execute(self, context: RunContext) -> str:
        return RunState.RUNNING_TESTS.value


class ReviewingState(PipelineState):
    """Advisory review of the final artifacts; never blocks publication."""

    def __init__(self, services: PipelineServices):
        super().__init__(RunState.REVIEWING, services)

    async def execute(self, context: RunContext) -> str:
        run = context.run
        review = self.services.runs.load_review(run.run_id)
        if review is None:
            review = await self.services.agents.reviewer.review(
                run.run_id, final_artifacts(self.services, run, context.plan)
            )
            if context.cancelled:
                return RunState.CANCELLED.value
            self.services.runs.save_review(review)
        context.review = review
        return RunState.PUBLISHING.value


class PublishingState(PipelineState):
    def __init__(self, services: PipelineServices):
        super().__init__(RunState.PUBLISHING, services)

    async def execute(self, context: RunContext) -> str:
        run = context.run
        review = context.review or self.services.runs.load_review(run.run_id)
        ref = self.services.publisher.publish(
            run, final_artifacts(self.services, run, context.plan), review
        )
        run.change_set_id = ref.change_set_id
        return RunState.SUCCEEDED.value


def _any_refining(context: RunContext) -> bool:
    return any(t.status is LanguageStatus.REFINING for t in context.run.tracks.values())


def _all_passed(context: RunContext) -> bool:
    return all(t.status is LanguageStatus.PASSED for t in context.run.tracks.values())


PIPELINE_TRANSITIONS = (
    Transition(RunState.PLANNING.value, RunState.GATHERING_CONTEXT.value),
    Transition(RunState.GATHERING_CONTEXT.value, RunState.GENERATING_TESTS.value),
    Transition(RunState.GENERATING_TESTS.value, RunState.GENERATING_CODE.value),
    Transition(RunState.GENERATING_CODE.value, RunState.RUNNING_TESTS.value),
    Transition(RunState.RUNNING_TESTS.value, RunState.REFINING.value, _any_refining),
    Transition(RunState.REFINING.value, RunState.RUNNING_TESTS.value),
    Transition(RunState.RUNNING_TESTS.value, RunState.REVIEWING.value, _all_passed),
    Transition(RunState.REVIEWING.value, RunState.PUBLISHING.value),
    Transition(RunState.PUBLISHING.value, RunState.SUCCEEDED.value),
    Transition(ANY_STATE, RunState.FAILED.value),
    Transition(ANY_STATE, RunState.CANCELLED.value),
)

# Where an interrupted run picks up again.
_RESUME_STATES = {RunState.REFINING: RunState.RUNNING_TESTS}


class Orchestrator:
    """Starts, tracks, cancels and resumes runs."""

    def __init__(
        self,
        settings: Settings,
        agents: AgentFactory,
        artifacts: VersionedArtifactStore,
        runs: RunRepository,
        harness: TestHarness,
        publisher: ChangePublisher,
    ):
        self.settings = settings
        self.services = PipelineServices(settings, agents, artifacts, runs, harness, publisher)
        self._active: dict[str, RunContext] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        # The hash frozen at startup wins; embedded use hashes the given settings.
        self._config_hash = get_config_hash() or config_hash(settings)

    @property
    def runs(self) -> RunRepository:
        return self.services.runs

    @property
    def artifacts(self) -> VersionedArtifactStore:
        return self.services.artifacts

    # Run lifecycle ----------------------------------------------------------

    def create_run(
        self,
        feature_description: str,
        target_languages: set[str] | list[str],
        requested_branch_name: str,
    ) -> Run:
        """Validate a request and persist a new pending run."""
        if not feature_description or not feature_description.strip():
            raise InvalidRunRequest("feature_description must be non-empty")
        languages = frozenset(lang.strip().lower() for lang in target_languages if lang.strip())
        if not languages:
            raise InvalidRunRequest("target_languages must name at least one language")
        unsupported = sorted(languages - self.settings.supported_languages())
        if unsupported:
            raise InvalidRunRequest(
                f"unsupported target languages: {unsupported}; "
                f"supported: {sorted(self.settings.supported_languages())}"
            )
        if not requested_branch_name or not requested_branch_name.strip():
            raise InvalidRunRequest("requested_branch_name must be non-empty")

        run = Run(
            run_id=new_id("run"),
            feature_description=feature_description.strip(),
            target_languages=languages,
            requested_branch_name=requested_branch_name.strip(),
            config_hash=self._config_hash,
        )
        self.runs.save_run(run)
        logger.info("Run created", run_id=run.run_id, languages=sorted(languages))
        return run

    async def trigger(
        self,
        feature_description: str,
        target_languages: set[str] | list[str],
        requested_branch_name: str,
    ) -> str:
        """Create a run and start it in the background; returns its id immediately."""
        run = self.create_run(feature_description, target_languages, requested_branch_name)
        self._start(run, RunState.PLANNING)
        return run.run_id

    async def execute(self, run: Run, initial_state: RunState = RunState.PLANNING) -> Run:
        """Drive ``run`` to a terminal state in the calling task."""
        return await self._execute(self._register(run, initial_state), initial_state)

    def _register(self, run: Run, initial_state: RunState) -> RunContext:
        context = RunContext(run=run)
        self._active[run.run_id] = context
        if run.state is not initial_state:
            run.state = initial_state
            run.state_history.append(initial_state.value)
            self.runs.save_run(run)
        return context

    async def _execute(self, context: RunContext, initial_state: RunState) -> Run:
        try:
            await self._drive(context, initial_state)
        finally:
            self._active.pop(context.run.run_id, None)
        return context.run

    def _start(self, run: Run, initial_state: RunState) -> None:
        # Registered before the task runs so cancel() sees the run as active.
        context = self._register(run, initial_state)
        task = asyncio.create_task(
            self._execute(context, initial_state), name=f"run-{run.run_id}"
        )
        self._tasks[run.run_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run.run_id, None))

    def _build_machine(self, context: RunContext, initial_state: RunState) -> StateMachine:
        services = self.services
        machine = StateMachine(
            name=context.run.run_id,
            initial_state=initial_state.value,
            context=context,
            on_transition=self._on_transition,
            cancelled_state=RunState.CANCELLED.value,
            error_state=RunState.FAILED.value,
        )
        for state in (
            PlanningState(services),
            GatheringContextState(services),
            GeneratingTestsState(services),
            GeneratingCodeState(services),
            RunningTestsState(services),
            RefiningState(services),
            ReviewingState(services),
            PublishingState(services),
            TerminalState(RunState.SUCCEEDED.value, StateType.FINAL),
            TerminalState(RunState.FAILED.value, StateType.ERROR),
            TerminalState(RunState.CANCELLED.value, StateType.FINAL),
        ):
            machine.add_state(state)
        for transition in PIPELINE_TRANSITIONS:
            machine.add_transition(transition)
        context.machine = machine
        return machine

    async def _drive(self, context: RunContext, initial_state: RunState) -> None:
        run = context.run
        machine = self._build_machine(context, initial_state)
        with bind_trace_id(run.run_id):
            languages = ",".join(sorted(run.target_languages))
            with probe("orchestrator.run", run.run_id, languages=languages):
                # Outputs of completed stages are reloaded so a resumed run
                # does not redo them.
                context.plan = self.runs.load_plan(run.run_id)
                context.bundle = self.runs.load_context(run.run_id)
                await machine.run_to_completion(self.settings.orchestrator.max_steps)
            self._finalize(context)

    def _on_transition(self, old: str, new: str, context: RunContext) -> None:
        run = context.run
        run.state = RunState(new)
        run.state_history.append(new)

        if run.state is RunState.SUCCEEDED:
            run.status = RunStatus.SUCCEEDED
        elif run.state is RunState.CANCELLED:
            run.status = RunStatus.ABANDONED
        elif run.state is RunState.FAILED:
            run.status = RunStatus.FAILED
            if run.failure is None:
                error = context.get("error")
                run.failure = RunFailure(
                    stage=context.get("error_state") or old,
                    reason=str(error) if error else "unknown error",
                    error_type=type(error).__name__ if error else None,
                )

        if run.status.is_terminal:
            run.finished_at = utcnow()
        self.runs.save_run(run)
        logger.info("Run transition", run_id=run.run_id, from_state=old, to_state=new)

    def _finalize(self, context: RunContext) -> None:
        run = context.run
        if not run.status.is_terminal:
            return
        versions = {
            a.path: a.version for a in self.artifacts.latest_for_run(run.run_id)
        }
        self.runs.save_snapshot(run.run_id, create_run_snapshot(run, versions))
        clear_trace_metrics(run.run_id)
        get_metrics_collector().record_run(run.status.value, run.attempts_by_language())
        log = logger.info if run.status is RunStatus.SUCCEEDED else logger.warning
        log(
            "Run finished",
            run_id=run.run_id,
            status=run.status.value,
            attempts=run.attempts_by_language(),
            change_set_id=run.change_set_id,
        )

    # Queries ------------------------------------------------------------------

    def get_run(self, run_id: str) -> Run:
        context = self._active.get(run_id)
        if context is not None:
            return context.run
        return self.runs.load_run(run_id)

    def list_runs(self) -> list[Run]:
        return [self.get_run(run_id) for run_id in self.runs.list_run_ids()]

    def get_artifacts(self, run_id: str) -> list[Artifact]:
        self.get_run(run_id)
        return self.artifacts.latest_for_run(run_id)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    def active_run_ids(self) -> list[str]:
        return sorted(self._active)

    async def wait(self, run_id: str, timeout: float | None = None) -> Run:
        """Wait for a background run to finish and return it."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return self.get_run(run_id)

    # Control ------------------------------------------------------------------

    async def cancel(self, run_id: str) -> Run:
        """Stop a run at its next state boundary; a finished run is left as is."""
        context = self._active.get(run_id)
        if context is not None:
            context.cancel_event.set()
            logger.info("Cancellation requested", run_id=run_id)
            return context.run

        run = self.runs.load_run(run_id)
        if not run.status.is_terminal:
            run.status = RunStatus.ABANDONED
            run.state = RunState.CANCELLED
            run.state_history.append(RunState.CANCELLED.value)
            run.finished_at = utcnow()
            self.runs.save_run(run)
            logger.info("Inactive run abandoned", run_id=run_id)
        return run

    async def resume(self, run_id: str) -> Run:
        """Continue an interrupted run from its last persisted state."""
        context = self._active.get(run_id)
        if context is not None:
            return context.run
        run = self.runs.load_run(run_id)
        if run.status.is_terminal:
            return run

        self._reconcile_tracks(run)
        state = _RESUME_STATES.get(run.state, run.state)
        logger.info("Resuming run", run_id=run_id, state=state.value)
        self._start(run, state)
        return run

    async def resume_pending(self) -> list[str]:
        resumed = []
        for run_id in self.runs.list_run_ids():
            run = self.runs.load_run(run_id)
            if not run.status.is_terminal and run_id not in self._active:
                await self.resume(run_id)
                resumed.append(run_id)
        return resumed

    def _reconcile_tracks(self, run: Run) -> None:
        """Rebuild per-language progress from the recorded test results.

        A failed attempt with no artifact stored after it was interrupted
        before its refinement was kept; that track resumes at the refine step
        instead of re-testing unchanged files.
        """
        max_attempts = self.settings.orchestrator.max_attempts
        for language, track in run.tracks.items():
            results = self.runs.load_results(run.run_id, language)
            track.attempts = len(results)
            track.last_result = results[-1] if results else None
            if track.last_result is not None and track.last_result.passed:
                track.status = LanguageStatus.PASSED
            elif track.refine_error or track.attempts >= max_attempts:
                track.status = LanguageStatus.EXHAUSTED
            elif track.last_result is not None and not self._refined_since(
                run.run_id, language, track.last_result
            ):
                track.status = LanguageStatus.REFINING
            else:
                track.status = LanguageStatus.PENDING

    def _refined_since(self, run_id: str, language: str, result: TestExecutionResult) -> bool:
        return any(
            a.created_at > result.created_at
            for a in self.artifacts.latest_for_run(run_id, language)
        )

    async def shutdown(self) -> None:
        """Interrupt background runs; they stay pending and can be resumed."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
