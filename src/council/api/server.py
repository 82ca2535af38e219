"""
FastAPI server for triggering and inspecting council runs.

Endpoints:
- GET /health: component status, uptime and config hash
- POST /runs: start a run in the background (202 with its id)
- GET /runs: summaries of all runs
- GET /runs/{run_id}: status, state history, per-language results and failure
- GET /runs/{run_id}/artifacts: latest version of every artifact
- GET /runs/{run_id}/artifacts/{path}: every version of one artifact
- POST /runs/{run_id}/cancel: stop a run at its next state boundary
- POST /runs/{run_id}/resume: continue an interrupted run
- GET /runs/{run_id}/change-set: the published change-set reference
- POST /runs/{run_id}/approve: record the human approval of a change-set
- GET /metrics: Prometheus exposition

Usage:
    $ council serve
    $ uvicorn council.api.server:app --host 0.0.0.0 --port 8000

    $ curl -X POST http://localhost:8000/runs \
      -H 'Content-Type: application/json' \
      -d '{"feature_description": "Add /profile endpoint",
           "target_languages": ["python"],
           "requested_branch_name": "feature/profile"}'
    {"run_id": "run_3f9a0c1d2e4b", "status": "pending", "state": "planning"}
"""

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from ..config.container import Container, setup_container
from ..config.settings import Settings, get_settings
from ..core.determinism import freeze_config_and_hash
from ..core.orchestrator import Orchestrator
from ..errors import InvalidRunRequest, RunNotFound
from ..models import Run
from ..observability.logging import get_logger, setup_logging
from ..observability.metrics import setup_metrics
from ..observability.tracing import get_tracing_manager, setup_tracing

logger = get_logger(__name__)


class RunRequest(BaseModel):
    feature_description: str = Field(..., min_length=1, max_length=20000)
    target_languages: list[str] = Field(..., min_length=1)
    requested_branch_name: str = Field(..., min_length=1, max_length=255)


class RunAccepted(BaseModel):
    run_id: str
    status: str
    state: str


class RunSummary(BaseModel):
    run_id: str
    feature_description: str
    target_languages: list[str]
    status: str
    state: str
    attempts: dict[str, int]
    change_set_id: str | None = None
    created_at: str
    finished_at: str | None = None


class ApproveRequest(BaseModel):
    reviewer: str = Field(..., min_length=1)


class HealthResponse(BaseModel):
    status: str
    version: str
    config_hash: str
    uptime_seconds: float
    active_runs: int
    components: dict[str, str]


def _summary(run: Run) -> RunSummary:
    return RunSummary(
        run_id=run.run_id,
        feature_description=run.feature_description,
        target_languages=sorted(run.target_languages),
        status=run.status.value,
        state=run.state.value,
        attempts=run.attempts_by_language(),
        change_set_id=run.change_set_id,
        created_at=run.created_at.isoformat(),
        finished_at=run.finished_at.isoformat() if run.finished_at else None,
    )


def _orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


def create_app(settings: Settings | None = None, container: Container | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or (container.settings if container else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging(settings.observability.log_level)
        logger.info("Starting council API server", environment=settings.environment)

        app.state.config_hash = freeze_config_and_hash(settings)
        if settings.observability.enable_tracing:
            setup_tracing(
                settings.observability.service_name,
                settings.observability.service_version,
                settings.observability.otlp_endpoint,
            )
        if settings.observability.enable_metrics:
            setup_metrics()

        app.state.container = container or setup_container(settings)
        app.state.orchestrator = app.state.container.get("orchestrator")
        app.state.startup_time = time.time()

        resumed = await app.state.orchestrator.resume_pending()
        if resumed:
            logger.info("Resumed interrupted runs", count=len(resumed))
        logger.info("Council API server ready")

        yield

        logger.info("Shutting down council API server")
        await app.state.container.cleanup()
        get_tracing_manager().shutdown()

    app = FastAPI(
        title="Council",
        description="Test-first multi-agent code generation",
        version=settings.observability.service_version,
        lifespan=lifespan,
    )

    if settings.api.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.api.cors_origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["authorization", "content-type"],
        )

    @app.exception_handler(RunNotFound)
    async def run_not_found_handler(request: Request, exc: RunNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidRunRequest)
    async def invalid_run_handler(request: Request, exc: InvalidRunRequest) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.get("/health", response_model=HealthResponse)
    async def health_check_endpoint(request: Request) -> HealthResponse:
        orchestrator = getattr(app.state, "orchestrator", None)
        components = {"config": "healthy"}
        components["orchestrator"] = "healthy" if orchestrator else "not_initialized"
        try:
            if orchestrator:
                orchestrator.runs.list_run_ids()
                components["storage"] = "healthy"
        except OSError as e:
            components["storage"] = f"error: {e}"
        components["tracing"] = (
            "initialized" if get_tracing_manager().tracer_provider else "not_initialized"
        )

        startup_time = getattr(app.state, "startup_time", time.time())
        healthy = all(
            v in ("healthy", "initialized", "not_initialized") for v in components.values()
        )
        return HealthResponse(
            status="healthy" if healthy and orchestrator else "unhealthy",
            version=settings.observability.service_version,
            config_hash=getattr(app.state, "config_hash", "unknown"),
            uptime_seconds=max(0.0, time.time() - startup_time),
            active_runs=len(orchestrator.active_run_ids()) if orchestrator else 0,
            components=components,
        )

    @app.post("/runs", response_model=RunAccepted, status_code=202)
    async def trigger_run_endpoint(body: RunRequest, request: Request) -> RunAccepted:
        orchestrator = _orchestrator(request)
        run_id = await orchestrator.trigger(
            body.feature_description, body.target_languages, body.requested_branch_name
        )
        run = orchestrator.get_run(run_id)
        logger.info("Run accepted", run_id=run_id)
        return RunAccepted(run_id=run_id, status=run.status.value, state=run.state.value)

    @app.get("/runs", response_model=list[RunSummary])
    async def list_runs_endpoint(request: Request) -> list[RunSummary]:
        return [_summary(run) for run in _orchestrator(request).list_runs()]

    @app.get("/runs/{run_id}")
    async def get_run_endpoint(run_id: str, request: Request) -> dict[str, Any]:
        orchestrator = _orchestrator(request)
        run = orchestrator.get_run(run_id)
        return {
            **run.to_dict(),
            "diagnostics": run.diagnostics(),
            "results": [r.to_dict() for r in orchestrator.runs.load_results(run_id)],
        }

    @app.get("/runs/{run_id}/artifacts")
    async def list_artifacts_endpoint(
        run_id: str, request: Request, include_content: bool = False
    ) -> list[dict[str, Any]]:
        artifacts = _orchestrator(request).get_artifacts(run_id)
        return [
            a.to_dict() if include_content else {**a.to_dict(), "content": None}
            for a in artifacts
        ]

    @app.get("/runs/{run_id}/artifacts/{path:path}")
    async def artifact_history_endpoint(
        run_id: str, path: str, request: Request
    ) -> list[dict[str, Any]]:
        orchestrator = _orchestrator(request)
        orchestrator.get_run(run_id)
        history = orchestrator.artifacts.history(run_id, path)
        if not history:
            raise HTTPException(status_code=404, detail=f"No artifact {path!r} in run {run_id}")
        return [a.to_dict() for a in history]

    @app.post("/runs/{run_id}/cancel", response_model=RunSummary)
    async def cancel_run_endpoint(run_id: str, request: Request) -> RunSummary:
        return _summary(await _orchestrator(request).cancel(run_id))

    @app.post("/runs/{run_id}/resume", response_model=RunSummary)
    async def resume_run_endpoint(run_id: str, request: Request) -> RunSummary:
        return _summary(await _orchestrator(request).resume(run_id))

    @app.get("/runs/{run_id}/change-set")
    async def change_set_endpoint(run_id: str, request: Request) -> dict[str, Any]:
        orchestrator = _orchestrator(request)
        orchestrator.get_run(run_id)
        return orchestrator.services.publisher.get(run_id).to_dict()

    @app.post("/runs/{run_id}/approve")
    async def approve_endpoint(
        run_id: str, body: ApproveRequest, request: Request
    ) -> dict[str, Any]:
        orchestrator = _orchestrator(request)
        orchestrator.get_run(run_id)
        try:
            ref = orchestrator.services.publisher.approve(run_id, body.reviewer)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        return ref.to_dict()

    @app.get("/metrics")
    async def metrics_endpoint() -> PlainTextResponse:
        return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
