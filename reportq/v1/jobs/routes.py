"""
Job API endpoints.

Submission, status lookup and aggregate counts. The service is built in the
application lifespan and read from app.state.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from reportq.config.logging import get_logger
from reportq.v1.core.exceptions import ValidationError, create_success_response
from reportq.v1.jobs.service import JobService

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_service(request: Request) -> JobService:
    """Dependency injection for the job service."""
    return request.app.state.job_service


# Convenience type alias for dependency injection
JobServiceDep = Depends(get_job_service)


@router.post("", response_model=dict, status_code=202)
async def submit_job(
    body: Any = Body(default=None),
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Accept a report job; processing happens asynchronously."""
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    result = await service.submit(body.get("job_type"), body.get("payload"))

    return create_success_response(
        data=result.model_dump(mode="json"), message="Job accepted for processing"
    )


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(service: JobService = JobServiceDep) -> dict[str, Any]:
    """Get job counts by status."""
    stats = await service.get_job_stats()
    return create_success_response(data=stats.model_dump())


@router.get("/{job_id}/status", response_model=dict)
async def get_job_status(
    job_id: str, service: JobService = JobServiceDep
) -> dict[str, Any]:
    """Get the last recorded state of a job."""
    status = await service.get_status(job_id)
    return create_success_response(data=status.model_dump(mode="json"))
