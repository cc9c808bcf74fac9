"""FastAPI adapter over the orchestrator service."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from agent_jobs import __version__
from agent_jobs.api.streaming import stream_job_events
from agent_jobs.config import Settings
from agent_jobs.orchestrator.errors import (
    CancelledByUser,
    JobNotFound,
    NotRunning,
    ValidationError,
)
from agent_jobs.orchestrator.models import AgentOptions, JobCreate, JobView
from agent_jobs.orchestrator.services import OrchestratorService, build_service

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class BuildRequest(BaseModel):
    command: str
    commit_message: str | None = None


class AgentTurnRequest(BaseModel):
    user_input: str
    options: dict[str, Any] | None = None
    commit_message: str | None = None


class CancelResponse(BaseModel):
    message: str
    build: dict[str, Any]


def get_service(request: Request) -> OrchestratorService:
    return request.app.state.service


def get_owner_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return x_user_id.strip()


Service = Annotated[OrchestratorService, Depends(get_service)]
Owner = Annotated[str, Depends(get_owner_id)]
Limit = Annotated[int, Query(ge=1, le=500)]


def create_app(
    *,
    settings: Settings | None = None,
    service: OrchestratorService | None = None,
) -> FastAPI:
    """Build the HTTP app; a service passed in is not shut down with the app."""

    resolved_settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        owned = service is None
        application.state.service = service or build_service(resolved_settings)
        logger.info("agent-jobs API started (db=%s)", resolved_settings.db_path)
        try:
            yield
        finally:
            if owned:
                application.state.service.shutdown(wait=False)
                application.state.service.repository.close()
            logger.info("agent-jobs API stopped")

    app = FastAPI(title="agent-jobs", version=__version__, lifespan=lifespan)

    @app.exception_handler(ValidationError)
    async def _validation_error(_: Request, error: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(error)})

    @app.exception_handler(JobNotFound)
    async def _not_found(_: Request, error: JobNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(error)})

    @app.exception_handler(NotRunning)
    async def _not_running(_: Request, error: NotRunning) -> JSONResponse:
        return JSONResponse(status_code=409, content={"error": str(error)})

    def owned_job(service: OrchestratorService, job_id: str, owner_id: str) -> JobView:
        job = service.get_job(job_id)
        if job.owner_id != owner_id:
            raise JobNotFound(job_id)
        return job

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.post("/api/projects/{scope_id}/builds", status_code=201)
    def create_build(
        scope_id: str,
        body: BuildRequest,
        service: Service,
        owner_id: Owner,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        job = service.create_job(
            JobCreate(
                owner_id=owner_id,
                scope_id=scope_id,
                session_id=session_id,
                command=body.command,
                metadata=_commit_metadata(body.commit_message),
            ),
        )
        return {"build": job.to_payload()}

    @app.post("/api/projects/{scope_id}/builds/agent", status_code=201)
    def create_agent_turn(
        scope_id: str,
        body: AgentTurnRequest,
        service: Service,
        owner_id: Owner,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        job = service.create_job(
            JobCreate(
                owner_id=owner_id,
                scope_id=scope_id,
                session_id=session_id,
                user_input=body.user_input,
                options=AgentOptions.from_dict(body.options),
                metadata=_commit_metadata(body.commit_message),
            ),
        )
        return {"build": job.to_payload()}

    @app.get("/api/builds")
    def list_builds(service: Service, owner_id: Owner, limit: Limit = 50) -> dict[str, Any]:
        jobs = service.list_jobs(owner_id=owner_id, limit=limit)
        return {"builds": [job.to_payload() for job in jobs]}

    @app.get("/api/projects/{scope_id}/builds")
    def list_scope_builds(
        scope_id: str,
        service: Service,
        owner_id: Owner,
        limit: Limit = 50,
    ) -> dict[str, Any]:
        jobs = service.list_jobs(owner_id=owner_id, scope_id=scope_id, limit=limit)
        return {"builds": [job.to_payload() for job in jobs]}

    @app.get("/api/builds/{job_id}")
    def get_build(job_id: str, service: Service, owner_id: Owner) -> dict[str, Any]:
        return {"build": owned_job(service, job_id, owner_id).to_payload()}

    @app.post("/api/builds/{job_id}/cancel")
    def cancel_build(job_id: str, service: Service, owner_id: Owner) -> CancelResponse:
        owned_job(service, job_id, owner_id)
        job = service.cancel_job(job_id, cause=CancelledByUser)
        return CancelResponse(message="Build cancelled successfully", build=job.to_payload())

    @app.get("/api/builds/{job_id}/logs")
    def get_build_logs(
        job_id: str,
        service: Service,
        owner_id: Owner,
        limit: Limit = 100,
    ) -> dict[str, Any]:
        owned_job(service, job_id, owner_id)
        logs = service.get_logs(job_id, limit=limit)
        return {"logs": [entry.to_payload() for entry in logs]}

    @app.get("/api/builds/{job_id}/stream")
    async def stream_build(
        job_id: str,
        request: Request,
        service: Service,
        owner_id: Owner,
    ) -> StreamingResponse:
        owned_job(service, job_id, owner_id)
        return StreamingResponse(
            stream_job_events(
                service,
                job_id,
                keepalive_seconds=resolved_settings.execution.keepalive_seconds,
                is_disconnected=request.is_disconnected,
                cancel_on_disconnect=resolved_settings.execution.cancel_on_disconnect,
            ),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    return app


def _commit_metadata(commit_message: str | None) -> dict[str, Any]:
    if commit_message and commit_message.strip():
        return {"commit_message": commit_message.strip()}
    return {}
