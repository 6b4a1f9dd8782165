"""
Health check endpoint with scheduler, connector and job status
"""

from collections import Counter
from fastapi import APIRouter, Depends, Request
from api.dependencies import IngestionServices, get_services
from schemas.api import HealthCheckResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, services: IngestionServices = Depends(get_services)):
    """
    Health check endpoint.

    Returns:
    - Whether the scheduler is running
    - Number of registered connectors
    - Job counts by status
    """
    jobs_by_status = {}
    total_jobs = 0

    try:
        jobs = await services.scheduler.list_jobs()
        total_jobs = len(jobs)
        jobs_by_status = dict(Counter(job.status.value for job in jobs))
    except Exception as e:
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Failed to fetch job status: {str(e)}")

    return HealthCheckResponse(
        scheduler_running=services.scheduler.running,
        registered_connectors=services.registry.count,
        total_jobs=total_jobs,
        jobs_by_status=jobs_by_status
    )
