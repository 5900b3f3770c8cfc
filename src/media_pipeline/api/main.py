"""Status API for the external API layer: polling, intake, re-process, cancel."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from media_pipeline import pipeline
from media_pipeline.config import resolve_config
from media_pipeline.errors import IntakeRejected, InvalidTransition, JobNotFound
from media_pipeline.logging_setup import configure_logging
from media_pipeline.queue.models import JobPayload, JobState

logger = logging.getLogger(__name__)


# --- Pydantic Models for Requests ---
class JobSubmit(BaseModel):
    """Intake payload; the source file must already be on local disk."""

    jobId: Optional[str] = None  # noqa: N815
    ownerId: str = Field(..., min_length=1)  # noqa: N815
    conversationId: Optional[str] = None  # noqa: N815
    messageId: Optional[str] = None  # noqa: N815
    sourcePath: str = Field(..., min_length=1)  # noqa: N815
    sourceMimeType: str  # noqa: N815
    sourceSizeBytes: Optional[int] = Field(default=None, ge=0)  # noqa: N815


class ReprocessRequest(BaseModel):
    sourcePath: Optional[str] = None  # noqa: N815


class CancelRequest(BaseModel):
    reason: str = Field(default="Cancelled by request", max_length=500)


def create_app(services: Optional[pipeline.Services] = None) -> FastAPI:
    """Build the app. Without ``services`` they are wired from config at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = False
        if getattr(app.state, "services", None) is None:
            config = resolve_config()
            configure_logging(config.logging)
            app.state.services = pipeline.build_services(config)
            owned = True
        yield
        if owned:
            app.state.services.close()

    app = FastAPI(title="media-pipeline", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_services(request: Request) -> pipeline.Services:
        return request.app.state.services

    @app.get("/health")
    def health():
        return {"status": "ok"}

    # --- CONFIG ENDPOINT ---
    @app.get("/config/defaults")
    def get_config_defaults(svc: pipeline.Services = Depends(get_services)):
        return svc.config.model_dump()

    @app.get("/stats")
    def get_stats(svc: pipeline.Services = Depends(get_services)):
        return pipeline.get_queue_stats(svc)

    # --- JOB ENDPOINTS ---
    @app.get("/jobs")
    def list_jobs(
        state: Optional[JobState] = None,
        limit: int = Query(default=50, ge=1, le=500),
        svc: pipeline.Services = Depends(get_services),
    ):
        return [job.to_status_dict() for job in svc.store.list_jobs(state=state, limit=limit)]

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str, svc: pipeline.Services = Depends(get_services)):
        job = svc.store.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job.to_status_dict()

    @app.get("/jobs/{job_id}/transitions")
    def get_job_transitions(job_id: str, svc: pipeline.Services = Depends(get_services)):
        if svc.store.get(job_id) is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return [t.model_dump(mode="json") for t in svc.store.transitions(job_id)]

    @app.post("/jobs", status_code=status.HTTP_201_CREATED)
    def submit_job(body: JobSubmit, svc: pipeline.Services = Depends(get_services)):
        try:
            kind = pipeline.kind_for_mime(body.sourceMimeType, svc.config.intake)
            source = Path(body.sourcePath)
            size = body.sourceSizeBytes
            if size is None:
                size = source.stat().st_size if source.is_file() else 0
            payload = JobPayload(
                job_id=body.jobId or pipeline.new_job_id(),
                owner_id=body.ownerId,
                conversation_id=body.conversationId,
                message_id=body.messageId,
                source_path=str(source),
                source_kind=kind,
                source_mime_type=body.sourceMimeType,
                source_size_bytes=size,
            )
            job = pipeline.submit_job(svc, payload)
        except IntakeRejected as e:
            raise HTTPException(status_code=422, detail={"code": "INTAKE_REJECTED", "message": str(e)})
        return job.to_status_dict()

    @app.post("/jobs/{job_id}/reprocess")
    def reprocess_job(
        job_id: str,
        body: Optional[ReprocessRequest] = None,
        svc: pipeline.Services = Depends(get_services),
    ):
        try:
            job = pipeline.reprocess_job(svc, job_id, source_path=body.sourcePath if body else None)
        except JobNotFound:
            raise HTTPException(status_code=404, detail="Job not found")
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail={"code": "INVALID_TRANSITION", "message": str(e)})
        except IntakeRejected as e:
            raise HTTPException(status_code=422, detail={"code": "SOURCE_UNAVAILABLE", "message": str(e)})
        return job.to_status_dict()

    @app.post("/jobs/{job_id}/cancel")
    def cancel_job(
        job_id: str,
        body: Optional[CancelRequest] = None,
        svc: pipeline.Services = Depends(get_services),
    ):
        reason = body.reason if body else "Cancelled by request"
        try:
            job = pipeline.cancel_job(svc, job_id, reason=reason)
        except JobNotFound:
            raise HTTPException(status_code=404, detail="Job not found")
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail={"code": "INVALID_TRANSITION", "message": str(e)})
        return job.to_status_dict()

    return app


app = create_app()
