"""
FastAPI application: thin HTTP surface over the Submitter.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from fastapi import Body, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from . import __version__
from .errors import NotFoundError, TransientIOError, ValidationError
from .services import Services

logger = structlog.get_logger()


class JobCreate(BaseModel):
    """Request body for POST /jobs."""

    subject_id: str = Field(..., min_length=1)
    trait_type: str = Field(..., min_length=1)
    threshold: Optional[float] = None
    commitment_hash: Optional[str] = None


class JobAccepted(BaseModel):
    job: Dict[str, Any]
    estimated_time: float
    queue_position: int


class SubjectDataPinned(BaseModel):
    subject_id: str
    content_id: str
    commitment_hash: str
    durable: bool


def get_services(request: Request) -> Services:
    return request.app.state.services


def create_app(services: Services) -> FastAPI:
    app = FastAPI(
        title="GenProof",
        description="Asynchronous proof generation pipeline",
        version=__version__,
    )
    app.state.services = services

    @app.get("/health", tags=["system"])
    async def health() -> dict:
        return {"status": "ok"}

    @app.post(
        "/jobs",
        response_model=JobAccepted,
        status_code=201,
        tags=["jobs"],
        responses={
            201: {"description": "Job queued, deduplicated or served from cache"},
            422: {"description": "Invalid trait, threshold or subject"},
            503: {"description": "Job store unavailable"},
        },
    )
    async def submit_job(
        body: JobCreate, services: Services = Depends(get_services)
    ) -> JobAccepted:
        submitter = services.submitter
        try:
            job = await submitter.submit(
                body.subject_id,
                body.trait_type,
                threshold=body.threshold,
                commitment_hash=body.commitment_hash,
            )
            position = await submitter.queue_position(job.id)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=e.to_dict())
        except TransientIOError as e:
            logger.error("job_submit_unavailable", error=e.message)
            raise HTTPException(status_code=503, detail=e.to_dict())

        return JobAccepted(
            job=job.to_dict(),
            estimated_time=submitter.estimated_time(job.trait_type),
            queue_position=position,
        )

    @app.get("/jobs/{job_id}", tags=["jobs"])
    async def get_job(
        job_id: str, services: Services = Depends(get_services)
    ) -> Dict[str, Any]:
        try:
            job = await services.submitter.get_status(job_id)
            position = await services.submitter.queue_position(job_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=e.to_dict())
        except TransientIOError as e:
            raise HTTPException(status_code=503, detail=e.to_dict())
        return {**job.to_dict(), "queue_position": position}

    @app.post(
        "/subjects/{subject_id}/data",
        response_model=SubjectDataPinned,
        status_code=201,
        tags=["subjects"],
        responses={
            201: {"description": "Data pinned; durable=false marks a local-only pin"},
            503: {"description": "Pin record store unavailable"},
        },
    )
    async def pin_subject_data(
        subject_id: str,
        data: Dict[str, Any] = Body(...),
        services: Services = Depends(get_services),
    ) -> SubjectDataPinned:
        try:
            result = await services.pinning.pin_subject_data(subject_id, data)
        except TransientIOError as e:
            logger.error("subject_data_unavailable", subject_id=subject_id, error=e.message)
            raise HTTPException(status_code=503, detail=e.to_dict())
        return SubjectDataPinned(
            subject_id=subject_id,
            content_id=result.content_id,
            commitment_hash=result.record.commitment_hash,
            durable=result.durable,
        )

    return app
