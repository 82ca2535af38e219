"""
Test execution harness.

Each (run, language, attempt) executes in a fresh temporary workspace that is
removed afterwards, so nothing leaks between languages or attempts. The
toolchain itself (pytest, jest, go test, ...) is an external process.

Outcomes:
- ``passed``: the test command exited 0
- ``failed``: the test command exited with a toolchain failure code
- ``error``: setup failed, a command was missing, timed out or crashed
"""

import asyncio
import contextlib
import os
import shutil
import signal
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from ..config.settings import HarnessConfig, ToolchainConfig
from ..models import Artifact, Outcome, TestExecutionResult, TestFailure
from ..observability.logging import get_logger, get_trace_id
from ..observability.metrics import get_metrics_collector
from ..observability.probe import probe
from .reports import parse_junit, parse_output

logger = get_logger(__name__)

# Seconds allowed for collecting output once a process group was killed.
KILL_DRAIN_TIMEOUT = 5.0


@dataclass
class CommandResult:
    returncode: int | None
    output: str
    timed_out: bool = False
    missing: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.missing


class TestHarness:
    """Runs one language's generated tests against its generated code."""

    __test__ = False

    def __init__(self, config: HarnessConfig):
        self.config = config

    async def run(
        self,
        language: str,
        tests: list[Artifact],
        code: list[Artifact],
        run_id: str = "adhoc",
        attempt: int = 1,
    ) -> TestExecutionResult:
        start = time.perf_counter()
        with probe("harness.run", get_trace_id(), language=language, attempt=attempt):
            outcome, failures, diagnostics = await self._execute(
                language, tests, code, run_id, attempt
            )
        duration = time.perf_counter() - start
        get_metrics_collector().record_test_execution(language, outcome.value, duration)

        result = TestExecutionResult(
            run_id=run_id,
            language=language,
            attempt=attempt,
            outcome=outcome,
            failures=tuple(failures),
            diagnostics=diagnostics[-self.config.output_tail_chars :],
            duration=duration,
        )
        logger.info(
            "Test execution finished",
            language=language,
            attempt=attempt,
            outcome=outcome.value,
            failures=len(failures),
        )
        return result

    async def _execute(
        self,
        language: str,
        tests: list[Artifact],
        code: list[Artifact],
        run_id: str,
        attempt: int,
    ) -> tuple[Outcome, list[TestFailure], str]:
        toolchain = self.config.toolchains.get(language)
        if toolchain is None:
            return Outcome.ERROR, [], f"no toolchain configured for language {language!r}"
        if not tests or not code:
            return Outcome.ERROR, [], "test and code artifacts are both required"

        root = self.config.workspace_root
        if root is not None:
            Path(root).mkdir(parents=True, exist_ok=True)
        workspace = Path(
            tempfile.mkdtemp(prefix=f"council-{run_id}-{language}-a{attempt}-", dir=root)
        )
        try:
            try:
                self._materialize(workspace, toolchain, [*code, *tests])
            except (OSError, ValueError) as e:
                return Outcome.ERROR, [], f"workspace setup failed: {e}"
            return await self._run_toolchain(workspace, toolchain)
        finally:
            if self.config.keep_workspaces:
                logger.info("Keeping workspace", path=str(workspace))
            else:
                shutil.rmtree(workspace, ignore_errors=True)

    def _materialize(
        self, workspace: Path, toolchain: ToolchainConfig, artifacts: list[Artifact]
    ) -> None:
        files = dict(toolchain.support_files)
        files.update({a.path: a.content for a in artifacts})
        for relpath, content in files.items():
            pure = PurePosixPath(relpath)
            if pure.is_absolute() or ".." in pure.parts:
                raise ValueError(f"artifact path escapes workspace: {relpath}")
            target = workspace.joinpath(*pure.parts)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

    async def _run_toolchain(
        self, workspace: Path, toolchain: ToolchainConfig
    ) -> tuple[Outcome, list[TestFailure], str]:
        report = workspace / toolchain.report_file if toolchain.report_file else None
        substitutions = {"workspace": str(workspace), "report": str(report or "")}
        env = {**os.environ, **{k: v.format(**substitutions) for k, v in toolchain.env.items()}}
        transcript: list[str] = []

        for command in toolchain.setup_commands:
            result = await self._exec(
                [part.format(**substitutions) for part in command],
                workspace,
                env,
                toolchain.timeout,
            )
            transcript.append(result.output)
            if not result.ok:
                return Outcome.ERROR, [], self._describe("setup", command, result, transcript)

        command = [part.format(**substitutions) for part in toolchain.test_command]
        result = await self._exec(command, workspace, env, toolchain.timeout)
        transcript.append(result.output)
        output = "\n".join(transcript)

        if result.ok:
            return Outcome.PASSED, [], output
        if result.timed_out or result.missing:
            return Outcome.ERROR, [], self._describe("test", command, result, transcript)
        if result.returncode not in toolchain.failure_exit_codes:
            return Outcome.ERROR, [], self._describe("test", command, result, transcript)

        failures = parse_junit(report) if report is not None else None
        if not failures:
            failures = parse_output(result.output)
        if not failures:
            failures = [TestFailure("suite", f"test command exited with {result.returncode}")]
        return Outcome.FAILED, failures, output

    @staticmethod
    def _describe(
        phase: str, command: list[str], result: CommandResult, transcript: list[str]
    ) -> str:
        if result.missing:
            reason = f"command not found: {command[0]}"
        elif result.timed_out:
            reason = "timed out"
        else:
            reason = f"exited with {result.returncode}"
        return f"{phase} command {' '.join(command)!r} {reason}\n" + "\n".join(transcript)

    async def _exec(
        self, command: list[str], cwd: Path, env: dict[str, str], timeout: float
    ) -> CommandResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except FileNotFoundError:
            return CommandResult(returncode=None, output="", missing=True)
        except OSError as e:
            return CommandResult(returncode=None, output=f"could not start: {e}")

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            # Runners fork workers that hold the output pipe; kill the whole group.
            _kill_group(proc)
            try:
                stdout, _ = await asyncio.wait_for(proc.communicate(), KILL_DRAIN_TIMEOUT)
            except TimeoutError:
                stdout = b""
            return CommandResult(
                returncode=proc.returncode,
                output=stdout.decode("utf-8", errors="replace"),
                timed_out=True,
            )
        except asyncio.CancelledError:
            _kill_group(proc)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(proc.wait(), KILL_DRAIN_TIMEOUT)
            raise
        return CommandResult(
            returncode=proc.returncode, output=stdout.decode("utf-8", errors="replace")
        )


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        os.killpg(proc.pid, signal.SIGKILL)
