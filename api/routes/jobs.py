"""
Ingestion job endpoints: CRUD plus pause, resume and immediate trigger.

Scheduling errors are translated by the application's exception handler:
missing jobs become 404, pausing a paused job 409, invalid cron 422.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from api.dependencies import get_data_sources, get_scheduler
from core.exceptions import JobNotFoundError
from ingestion.backends import next_run_time
from ingestion.repository import DataSourceRepository
from ingestion.scheduler import IngestionJobScheduler
from schemas.api import JobActionResponse, JobResponse
from schemas.job import IngestionJobDefinition, JobCreateRequest, JobStatus, JobUpdateRequest
from typing import List, Optional
import json
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["Jobs"])


def _response(job: IngestionJobDefinition, scheduler: IngestionJobScheduler) -> JobResponse:
    next_run = None
    if job.cron_expression and not job.is_paused:
        next_run = next_run_time(job.cron_expression, scheduler.timezone)
    return JobResponse(**job.model_dump(), next_run_time=next_run)


async def _require(scheduler: IngestionJobScheduler, job_id: str) -> IngestionJobDefinition:
    job = await scheduler.get_job(job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found", context={"job_id": job_id})
    return job


@router.get("", response_model=List[JobResponse])
async def list_jobs(
    tenant_id: Optional[str] = Query(None, description="Filter by tenant"),
    status: Optional[JobStatus] = Query(None, description="Filter by job status"),
    scheduler: IngestionJobScheduler = Depends(get_scheduler)
):
    jobs = await scheduler.list_jobs(tenant_id=tenant_id, status=status)
    return [_response(job, scheduler) for job in jobs]


@router.post("", response_model=JobResponse, status_code=201)
async def create_job(
    body: JobCreateRequest,
    request: Request,
    scheduler: IngestionJobScheduler = Depends(get_scheduler),
    data_sources: DataSourceRepository = Depends(get_data_sources)
):
    request_id = getattr(request.state, "request_id", None)
    if await data_sources.get(body.data_source_id) is None:
        raise HTTPException(status_code=404, detail=f"Data source {body.data_source_id} not found")

    job_id = await scheduler.schedule_job(body.to_definition())
    logger.info(f"[{request_id}] Created job {job_id} for data source {body.data_source_id}")
    return _response(await _require(scheduler, job_id), scheduler)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, scheduler: IngestionJobScheduler = Depends(get_scheduler)):
    return _response(await _require(scheduler, job_id), scheduler)


@router.put("/{job_id}", response_model=JobResponse)
async def update_job(
    job_id: str,
    body: JobUpdateRequest,
    request: Request,
    scheduler: IngestionJobScheduler = Depends(get_scheduler)
):
    """Partial update; only fields present in the body change"""
    request_id = getattr(request.state, "request_id", None)
    job = await _require(scheduler, job_id)
    changes = body.model_dump(exclude_unset=True)

    for field in ("name", "description", "cron_expression", "is_paused", "max_retry_count"):
        if field in changes:
            setattr(job, field, changes[field])
    if "cron_expression" in changes:
        job.cron_expression = (job.cron_expression or "").strip() or None
    if "is_paused" in changes:
        job.status = JobStatus.PAUSED if job.is_paused else JobStatus.SCHEDULED
    if body.notification_config is not None:
        job.notification_config_json = body.notification_config.model_dump_json()
    if "extraction_parameters" in changes:
        job.extraction_parameters_json = (
            json.dumps(body.extraction_parameters) if body.extraction_parameters else None
        )

    await scheduler.update_job(job)
    logger.info(f"[{request_id}] Updated job {job_id}: {sorted(changes)}")
    return _response(await _require(scheduler, job_id), scheduler)


@router.delete("/{job_id}", response_model=JobActionResponse)
async def delete_job(job_id: str, request: Request, scheduler: IngestionJobScheduler = Depends(get_scheduler)):
    deleted = await scheduler.delete_job(job_id)
    logger.info(f"[{getattr(request.state, 'request_id', None)}] Deleted job {job_id}")
    return JobActionResponse(job_id=job_id, success=deleted, message="Job deleted")


@router.post("/{job_id}/pause", response_model=JobActionResponse)
async def pause_job(job_id: str, scheduler: IngestionJobScheduler = Depends(get_scheduler)):
    await scheduler.pause_job(job_id)
    return JobActionResponse(job_id=job_id, success=True, message="Job paused")


@router.post("/{job_id}/resume", response_model=JobActionResponse)
async def resume_job(job_id: str, scheduler: IngestionJobScheduler = Depends(get_scheduler)):
    await _require(scheduler, job_id)
    if not await scheduler.resume_job(job_id):
        raise HTTPException(status_code=409, detail=f"Job {job_id} is not paused")
    return JobActionResponse(job_id=job_id, success=True, message="Job resumed")


@router.post("/{job_id}/trigger", response_model=JobActionResponse, status_code=202)
async def trigger_job(job_id: str, scheduler: IngestionJobScheduler = Depends(get_scheduler)):
    await _require(scheduler, job_id)
    if not await scheduler.trigger_job_now(job_id):
        raise HTTPException(status_code=409, detail=f"Job {job_id} is paused and cannot be triggered")
    return JobActionResponse(job_id=job_id, success=True, message="Job execution enqueued")
