"""
Tests for the command line entry point.
"""

import asyncio
import json
from unittest.mock import patch

import pytest

from council import __version__
from council.core.orchestrator import Orchestrator
from council.errors import RunNotFound
from council.main import build_parser, cli_main, main
from council.models import ReviewReport, Run
from council.publisher.publisher import ChangePublisher
from council.storage.blobs import LocalStore
from council.storage.runs import RunRepository


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point the CLI's settings at temporary storage."""
    monkeypatch.setenv("COUNCIL_STORAGE__ROOT", str(tmp_path / "data"))
    monkeypatch.setenv("COUNCIL_PUBLISHER__DIRECTORY", str(tmp_path / "changesets"))
    monkeypatch.setenv("COUNCIL_OBSERVABILITY__ENABLE_TRACING", "false")
    # Keep stdout to the JSON the commands print.
    monkeypatch.setenv("COUNCIL_OBSERVABILITY__LOG_LEVEL", "ERROR")
    return tmp_path


def saved_run(root) -> Run:
    run = Run("run_cli", "Add a profile endpoint", frozenset({"go"}), "feature/profile")
    RunRepository(LocalStore(root / "data")).save_run(run)
    return run


class TestParser:
    def test_run_command(self):
        args = build_parser().parse_args(
            ["run", "Add /profile", "-l", "python", "go", "-b", "feature/profile"]
        )

        assert args.command == "run"
        assert args.languages == ["python", "go"]
        assert args.branch == "feature/profile"
        assert args.timeout is None

    def test_run_requires_languages(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "Add /profile", "-b", "feature/profile"])


class TestMain:
    def test_version(self, capsys):
        assert main(["--version"]) == 0
        assert __version__ in capsys.readouterr().out

    def test_no_command(self, capsys):
        assert main([]) == 2
        assert "usage" in capsys.readouterr().out

    def test_status(self, cli_env, capsys):
        saved_run(cli_env)

        assert main(["status", "run_cli"]) == 0

        report = json.loads(capsys.readouterr().out)
        assert report["run_id"] == "run_cli"
        assert report["status"] == "pending"
        assert report["diagnostics"]["languages"]["go"]["attempts"] == 0

    def test_status_of_unknown_run(self, cli_env):
        with pytest.raises(RunNotFound):
            main(["status", "run_missing"])

    def test_approve(self, cli_env, capsys):
        run = saved_run(cli_env)
        publisher = ChangePublisher(LocalStore(cli_env / "changesets"))
        publisher.publish(run, [], ReviewReport(run.run_id))

        assert main(["approve", "run_cli", "--reviewer", "alice"]) == 0

        ref = json.loads(capsys.readouterr().out)
        assert ref["status"] == "approved"
        assert ref["approved_by"] == "alice"

    def test_run_timeout_leaves_run_resumable(self, cli_env, capsys):
        async def stalled(self, run, initial_state=None):
            await asyncio.sleep(10)

        with patch.object(Orchestrator, "execute", stalled):
            code = main(
                ["run", "Add /profile", "-l", "python", "-b", "feature/p", "--timeout", "0.1"]
            )

        captured = capsys.readouterr()
        report = json.loads(captured.out)
        assert code == 1
        assert report["status"] == "pending"
        assert f"council resume {report['run_id']}" in captured.err

    def test_serve_uses_settings(self, cli_env):
        with patch("council.main.uvicorn.run") as run:
            assert main(["serve", "--port", "9001"]) == 0

        run.assert_called_once_with(
            "council.api.server:app", host="0.0.0.0", port=9001, reload=False, workers=1
        )


class TestCliMain:
    def test_errors_exit_with_one(self, cli_env, capsys):
        with patch("sys.argv", ["council", "status", "run_missing"]):
            with pytest.raises(SystemExit) as exc_info:
                cli_main()

        assert exc_info.value.code == 1
        assert "Run not found: run_missing" in capsys.readouterr().err

    def test_interrupt_exits_with_130(self):
        with patch("council.main.main", side_effect=KeyboardInterrupt):
            with pytest.raises(SystemExit) as exc_info:
                cli_main()

        assert exc_info.value.code == 130
