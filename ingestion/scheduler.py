"""
Ingestion job scheduler.

Owns job definitions and their registrations with the scheduling backend.
Jobs with a cron expression get a recurring registration unless paused; jobs
without one only run through trigger_job_now(). Execution itself is delegated
to JobExecutor.
"""

from typing import List, Optional
import logging
import uuid

from core.exceptions import JobAlreadyPausedError, JobNotFoundError
from ingestion.backends import JobHandler, SchedulingBackend, validate_cron
from ingestion.executor import JobExecutor
from ingestion.notifications import JobNotificationService
from ingestion.repository import JobRepository
from schemas.job import IngestionJobDefinition, JobStatus

logger = logging.getLogger(__name__)


class IngestionJobScheduler:

    def __init__(
        self,
        jobs: JobRepository,
        backend: SchedulingBackend,
        executor: JobExecutor,
        notifications: Optional[JobNotificationService] = None
    ):
        self.jobs = jobs
        self.backend = backend
        self.executor = executor
        self.notifications = notifications or executor.notifications

    @property
    def running(self) -> bool:
        return self.backend.running

    @property
    def timezone(self) -> Optional[str]:
        return getattr(self.backend, "timezone", None)

    def _handler(self, job_id: str) -> JobHandler:
        async def run():
            await self.executor.execute_job(job_id)
        return run

    def _register(self, job: IngestionJobDefinition):
        if not job.cron_expression or job.is_paused:
            return
        logger.info(f"Scheduling recurring job {job.id} with cron: {job.cron_expression}")
        self.backend.add_or_update(job.id, job.cron_expression, self._handler(job.id))

    async def _require(self, job_id: str) -> IngestionJobDefinition:
        job = await self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found", context={"job_id": job_id})
        return job

    # ------------------------------------------------------------------
    # Job management
    # ------------------------------------------------------------------

    async def schedule_job(self, job: IngestionJobDefinition) -> str:
        """Persist a new job and register its schedule; returns the job id"""
        logger.info(f"Scheduling ingestion job: {job.name} for data source {job.data_source_id}")
        if job.cron_expression:
            job.cron_expression = validate_cron(job.cron_expression, self.timezone)
        if not job.id:
            job.id = str(uuid.uuid4())
        job.status = JobStatus.PAUSED if job.is_paused else JobStatus.SCHEDULED

        stored = await self.jobs.add(job)
        self._register(stored)
        logger.info(f"Ingestion job scheduled with ID: {stored.id}")
        return stored.id

    async def update_job(self, job: IngestionJobDefinition) -> bool:
        """
        Persist changes to an existing job.

        The recurring registration is refreshed when the cron expression or
        the pause flag changed.
        """
        existing = await self._require(job.id)
        if job.cron_expression:
            job.cron_expression = validate_cron(job.cron_expression, self.timezone)

        await self.jobs.update(job)

        schedule_changed = (
            existing.cron_expression != job.cron_expression or existing.is_paused != job.is_paused
        )
        if schedule_changed:
            if job.is_paused or not job.cron_expression:
                self.backend.remove_if_exists(job.id)
            else:
                self._register(job)
        logger.info(f"Updated job {job.id}")
        return True

    async def pause_job(self, job_id: str) -> bool:
        job = await self._require(job_id)
        if job.is_paused:
            raise JobAlreadyPausedError(f"Job {job_id} is already paused", context={"job_id": job_id})

        job.is_paused = True
        job.status = JobStatus.PAUSED
        await self.jobs.update(job)
        self.backend.remove_if_exists(job_id)
        logger.info(f"Paused job {job_id}")
        await self.notifications.send(job, JobStatus.PAUSED)
        return True

    async def resume_job(self, job_id: str) -> bool:
        job = await self.jobs.get(job_id)
        if job is None:
            logger.warning(f"Attempted to resume non-existent job: {job_id}")
            return False
        if not job.is_paused:
            logger.warning(f"Attempted to resume a job that is not paused: {job_id}")
            return False

        job.is_paused = False
        job.status = JobStatus.SCHEDULED
        await self.jobs.update(job)
        self._register(job)
        logger.info(f"Resumed job {job_id}")
        return True

    async def trigger_job_now(self, job_id: str) -> bool:
        """Enqueue one immediate execution; rejected for missing or paused jobs"""
        job = await self.jobs.get(job_id)
        if job is None:
            logger.warning(f"Attempted to trigger non-existent job: {job_id}")
            return False
        if job.is_paused:
            logger.warning(f"Cannot trigger paused job: {job_id}")
            return False

        logger.info(f"Triggering immediate execution of job {job_id}")
        self.backend.enqueue(self._handler(job_id))
        return True

    async def delete_job(self, job_id: str) -> bool:
        await self._require(job_id)
        self.backend.remove_if_exists(job_id)
        deleted = await self.jobs.delete(job_id)
        logger.info(f"Ingestion job {job_id} deleted: {deleted}")
        return deleted

    async def get_job(self, job_id: str) -> Optional[IngestionJobDefinition]:
        return await self.jobs.get(job_id)

    async def list_jobs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[JobStatus] = None
    ) -> List[IngestionJobDefinition]:
        return await self.jobs.list(tenant_id=tenant_id, status=status)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def restore_schedules(self) -> int:
        """Register every un-paused cron job; used on startup"""
        restored = 0
        for job in await self.jobs.list():
            if job.cron_expression and not job.is_paused:
                try:
                    self._register(job)
                    restored += 1
                except Exception as e:
                    logger.error(f"Could not restore schedule for job {job.id}: {e}")
        logger.info(f"Restored {restored} recurring job(s)")
        return restored

    async def start(self):
        await self.restore_schedules()
        self.backend.start()
        logger.info("Ingestion job scheduler started")

    def stop(self):
        self.backend.shutdown()
        logger.info("Ingestion job scheduler stopped")
