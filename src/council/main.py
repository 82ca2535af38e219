"""
Command line entry point.

    council serve [--host HOST] [--port PORT] [--reload]
    council run "Add a /profile endpoint" --languages python typescript --branch feature/profile
"""

import argparse
import asyncio
import json
import sys

import uvicorn

from .config.container import setup_container
from .config.settings import get_settings
from .core.determinism import freeze_config_and_hash
from .errors import CouncilError
from .models import Run, RunStatus
from .observability.logging import get_logger, setup_logging
from .observability.tracing import setup_tracing

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="council", description="Test-first multi-agent council")
    parser.add_argument("--version", action="store_true", help="Show version")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP API server")
    serve.add_argument("--host", default=None, help="Host to bind to")
    serve.add_argument("--port", type=int, default=None, help="Port to bind to")
    serve.add_argument("--reload", action="store_true", help="Enable auto-reload")
    serve.add_argument("--workers", type=int, default=None, help="Number of workers")

    run = sub.add_parser("run", help="Run one feature request to completion")
    run.add_argument("feature_description", help="Natural-language feature request")
    run.add_argument(
        "--languages", "-l", nargs="+", required=True, help="Target languages, e.g. python go"
    )
    run.add_argument("--branch", "-b", required=True, help="Requested branch name")
    run.add_argument("--timeout", type=float, default=None, help="Give up after this many seconds")

    resume = sub.add_parser("resume", help="Continue an interrupted run")
    resume.add_argument("run_id")

    status = sub.add_parser("status", help="Show a run's status and diagnostics")
    status.add_argument("run_id")

    approve = sub.add_parser("approve", help="Approve a published change-set")
    approve.add_argument("run_id")
    approve.add_argument("--reviewer", required=True)
    return parser


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, default=str))


def _report(run: Run) -> dict:
    return {
        "run_id": run.run_id,
        "status": run.status.value,
        "state": run.state.value,
        "attempts": run.attempts_by_language(),
        "change_set_id": run.change_set_id,
        "diagnostics": run.diagnostics(),
    }


async def _run_feature(args) -> Run:
    container = setup_container(get_settings())
    async with container.lifespan():
        orchestrator = container.get("orchestrator")
        run = orchestrator.create_run(args.feature_description, args.languages, args.branch)
        logger.info("Run started", run_id=run.run_id)
        try:
            await asyncio.wait_for(orchestrator.execute(run), args.timeout)
        except TimeoutError:
            logger.warning("Run timed out", run_id=run.run_id, timeout=args.timeout)
            return orchestrator.get_run(run.run_id)
        return run


async def _resume(run_id: str) -> Run:
    container = setup_container(get_settings())
    async with container.lifespan():
        orchestrator = container.get("orchestrator")
        await orchestrator.resume(run_id)
        return await orchestrator.wait(run_id)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()

    if args.version:
        print(f"council {settings.observability.service_version}")
        return 0
    if args.command is None:
        parser.print_help()
        return 2

    setup_logging(settings.observability.log_level)
    freeze_config_and_hash(settings)

    if args.command == "serve":
        uvicorn.run(
            "council.api.server:app",
            host=args.host or settings.api.host,
            port=args.port or settings.api.port,
            reload=args.reload or settings.api.reload,
            workers=args.workers or settings.api.workers,
        )
        return 0

    if settings.observability.enable_tracing:
        setup_tracing(
            settings.observability.service_name,
            settings.observability.service_version,
            settings.observability.otlp_endpoint,
        )

    if args.command == "run":
        run = asyncio.run(_run_feature(args))
        _print(_report(run))
        if not run.status.is_terminal:
            print(
                f"Run {run.run_id} timed out after {args.timeout}s; "
                f"continue it with `council resume {run.run_id}`",
                file=sys.stderr,
            )
        return 0 if run.status is RunStatus.SUCCEEDED else 1

    if args.command == "resume":
        run = asyncio.run(_resume(args.run_id))
        _print(_report(run))
        return 0 if run.status is RunStatus.SUCCEEDED else 1

    container = setup_container(settings)
    if args.command == "status":
        _print(_report(container.get("run_repository").load_run(args.run_id)))
        return 0

    ref = container.get("publisher").approve(args.run_id, args.reviewer)
    _print(ref.to_dict())
    return 0


def cli_main():
    """CLI entry point."""
    try:
        sys.exit(main(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\nInterrupted; pending runs can be resumed with `council resume <run_id>`")
        sys.exit(130)
    except (CouncilError, ValueError) as e:
        logger.error(f"Command failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
