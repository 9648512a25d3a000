"""FastAPI web server wrapper for the pipeline orchestrator.

Provides REST API endpoints for:
- Health checks
- Submitting pipeline runs (executed in the background)
- Viewing run status and per-job state snapshots
- Cancelling runs
"""
from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import anyio
import structlog
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from . import __version__
from .config import load_config
from .context import RunContext
from .errors import DefinitionError, OrchestratorError
from .models import JobDescriptor
from .orchestrator import PipelineOrchestrator

logger = structlog.get_logger(__name__)

SERVICE_NAME = "pipeline-orchestrator"


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    service: str
    version: str
    active_runs: int


class RunRequest(BaseModel):
    jobs: List[JobDescriptor]
    max_concurrency: Optional[int] = Field(default=None, ge=1)


class RunAccepted(BaseModel):
    run_id: str
    status: str
    jobs: int


class CancelRequest(BaseModel):
    reason: str = "cancelled via API"


def _orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


async def _execute(orch: PipelineOrchestrator, ctx: RunContext, max_concurrency: Optional[int]) -> None:
    try:
        await orch.execute(ctx, max_concurrency)
    except OrchestratorError:
        logger.exception("run.crashed", run_id=ctx.run_id)


def create_app(orchestrator: Optional[PipelineOrchestrator] = None) -> FastAPI:
    orch = orchestrator or PipelineOrchestrator(load_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Background runs live in this task group and are cancelled on shutdown
        async with anyio.create_task_group() as tg:
            app.state.task_group = tg
            yield
            tg.cancel_scope.cancel()

    app = FastAPI(
        title="Pipeline Orchestrator API",
        description="Schedules CI/CD pipeline jobs as a dependency graph",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orch

    @app.get("/api/v1/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint for load balancers and monitoring."""
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now(timezone.utc).isoformat(),
            service=SERVICE_NAME,
            version=__version__,
            active_runs=len(_orchestrator(request).active_runs),
        )

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "service": SERVICE_NAME,
            "version": __version__,
            "docs": "/docs",
            "health": "/api/v1/health",
        }

    @app.post("/api/v1/runs", response_model=RunAccepted, status_code=202)
    async def submit_run(body: RunRequest, request: Request):
        """Validate the job set and start it in the background."""
        o = _orchestrator(request)
        try:
            ctx = o.prepare(body.jobs)
        except DefinitionError as e:
            raise HTTPException(status_code=422, detail=str(e))
        request.app.state.task_group.start_soon(_execute, o, ctx, body.max_concurrency)
        return RunAccepted(run_id=ctx.run_id, status="accepted", jobs=len(ctx.store))

    @app.get("/api/v1/runs")
    async def list_runs(request: Request):
        """List active runs and the most recent finished ones."""
        o = _orchestrator(request)
        return {
            "active": o.active_runs,
            "runs": [
                {
                    "run_id": r.run_id,
                    "status": r.status.value,
                    "started_at": r.started_at.isoformat(),
                    "finished_at": r.finished_at.isoformat(),
                    "cancel_reason": r.cancel_reason,
                }
                for r in o.results[-10:]
            ],
        }

    @app.get("/api/v1/runs/{run_id}")
    async def get_run(run_id: str, request: Request) -> Dict[str, Any]:
        o = _orchestrator(request)
        result = o.result(run_id)
        if result is not None:
            return result.to_dict()
        ctx = o.context(run_id)
        if ctx is None:
            raise HTTPException(status_code=404, detail=f"Unknown run {run_id}")
        return {
            "run_id": run_id,
            "status": "running",
            "cancel_reason": ctx.cancel_reason,
            "dispatch_order": list(ctx.dispatch_order),
            "jobs": {jid: st.to_dict() for jid, st in ctx.tracker.snapshot().items()},
        }

    @app.post("/api/v1/runs/{run_id}/cancel", status_code=202)
    async def cancel_run(run_id: str, request: Request, body: Optional[CancelRequest] = None):
        o = _orchestrator(request)
        if o.result(run_id) is not None:
            raise HTTPException(status_code=409, detail=f"Run {run_id} already finished")
        if o.context(run_id) is None:
            raise HTTPException(status_code=404, detail=f"Unknown run {run_id}")
        reason = (body or CancelRequest()).reason
        o.cancel(run_id, reason)
        return {"run_id": run_id, "status": "cancelling", "reason": reason}

    return app


if __name__ == "__main__":
    import uvicorn

    from .logs import configure_logging

    configure_logging(os.environ.get("LOG_LEVEL", "info"), json_logs=bool(os.environ.get("JSON_LOGS")))
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("pipeline_orchestrator.web_server:create_app", factory=True, host="0.0.0.0", port=port)
