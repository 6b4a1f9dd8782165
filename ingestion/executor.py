"""
Runs one ingestion job end to end.

execute_job() never raises: every failure becomes a Failed status, a failure
notification and a bump of the job's failure counter. Once the counter reaches
the job's retry budget the job is paused and its recurring registration is
dropped. The executor does not retry by itself; the next cron tick does.
"""

from typing import Dict, List, Optional
import asyncio
import logging

from core.exceptions import (
    ConnectionCancelledError,
    ConnectionTimeoutError,
    ConnectorConnectionError,
    ConnectorNotRegisteredError,
    ConnectorValidationError,
    ExtractionError,
    FullReloadRequiredError,
    IngestionException,
    NonRetryableError,
    OperationCancelledError,
    RetryableError,
    TransformationError,
)
from connectors.base import DataSourceConnector
from connectors.factory import ConnectorFactory
from credentials.manager import CredentialManager
from ingestion.backends import SchedulingBackend
from ingestion.notifications import JobNotificationService
from ingestion.repository import DataSourceRepository, JobRepository
from schemas.connector import ConnectorConfiguration
from schemas.extraction import ExtractionResult
from schemas.job import DataSourceDefinition, IngestionJobDefinition, JobExtractionSpec, JobStatus, utcnow

logger = logging.getLogger(__name__)


class JobExecutor:

    def __init__(
        self,
        jobs: JobRepository,
        data_sources: DataSourceRepository,
        factory: ConnectorFactory,
        credentials: Optional[CredentialManager] = None,
        notifications: Optional[JobNotificationService] = None,
        backend: Optional[SchedulingBackend] = None
    ):
        self.jobs = jobs
        self.data_sources = data_sources
        self.factory = factory
        self.credentials = credentials
        self.notifications = notifications or JobNotificationService()
        self.backend = backend

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_connector_id(self, source: DataSourceDefinition) -> str:
        """Explicit connector id first, then the first connector handling the source type"""
        if source.connector_id and source.connector_id in self.factory.registry:
            return source.connector_id
        candidates = self.factory.ids_for_source_type(source.source_type)
        if not candidates:
            raise ConnectorNotRegisteredError(
                f"Connector not found for data source type: {source.source_type}",
                context={"data_source_id": source.id, "source_type": source.source_type}
            )
        return candidates[0]

    async def resolve_connection_parameters(self, source: DataSourceDefinition) -> Dict[str, str]:
        """Stored parameters overlaid with secrets from the credential store"""
        params = {key: str(value) for key, value in source.connection_parameters.items() if value is not None}
        if source.credential_keys:
            if self.credentials is None:
                raise ConnectorValidationError(
                    "Data source references credentials but no credential store is configured",
                    context={"data_source_id": source.id}
                )
            params.update(await self.credentials.resolve_parameters(source.credential_keys))
        return params

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_job(self, job_id: str, cancel_event: Optional[asyncio.Event] = None) -> Optional[JobStatus]:
        """
        Execute a job once.

        Returns the final status, or None when the job was skipped because it
        no longer exists or is paused.
        """
        logger.info(f"Starting execution of job {job_id}")
        job = await self.jobs.get(job_id)
        if job is None:
            logger.error(f"Job {job_id} not found during execution")
            return None
        if job.is_paused:
            logger.warning(f"Cannot execute paused job: {job_id}")
            return None

        await self.jobs.update_status(job_id, JobStatus.RUNNING)
        await self.jobs.record_execution(job_id, utcnow())

        try:
            count = await self._run(job, cancel_event)
        except OperationCancelledError as e:
            logger.info(f"Job {job_id} was cancelled")
            await self.jobs.update_status(job_id, JobStatus.CANCELLED, e.message)
            await self._notify(job, JobStatus.CANCELLED, e.message)
            return JobStatus.CANCELLED
        except Exception as e:
            return await self._handle_failure(job, e)

        message = f"Successfully extracted {count} items"
        await self.jobs.update_status(job_id, JobStatus.COMPLETED, message)
        await self.jobs.reset_failure_count(job_id)
        await self._notify(job, JobStatus.COMPLETED, message)
        logger.info(f"Job {job_id} completed: {message}")
        return JobStatus.COMPLETED

    async def _run(self, job: IngestionJobDefinition, cancel_event: Optional[asyncio.Event]) -> int:
        source = await self.data_sources.get(job.data_source_id)
        if source is None:
            raise ConnectorValidationError(
                f"Data source not found: {job.data_source_id}",
                context={"job_id": job.id, "data_source_id": job.data_source_id}
            )

        connector_id = self.resolve_connector_id(source)
        spec = JobExtractionSpec.from_json(job.extraction_parameters_json)
        params = await self.resolve_connection_parameters(source)
        configuration = ConnectorConfiguration(
            connector_id=connector_id,
            display_name=source.name,
            tenant_id=job.tenant_id or source.tenant_id,
            connection_parameters=params,
        )

        connector = self.factory.create(connector_id)
        try:
            await self._connect(connector, configuration, cancel_event)
            result = await connector.extract_data(spec.extraction, cancel_event=cancel_event)
            self._check_extraction(result)
            rows = result.data
            logger.info(f"Successfully extracted {len(rows)} items from data source {source.id}")

            if spec.transformation is not None and spec.transformation.rules:
                transformed = await connector.transform_data(rows, spec.transformation, cancel_event=cancel_event)
                if transformed.is_cancelled:
                    raise OperationCancelledError("Transformation was cancelled")
                if not transformed.success:
                    raise TransformationError(
                        f"Failed to transform data: {transformed.error_message}",
                        context={"job_id": job.id}
                    )
                rows = transformed.data

            await connector.disconnect()
            return len(rows)
        finally:
            await connector.dispose()

    async def _connect(
        self,
        connector: DataSourceConnector,
        configuration: ConnectorConfiguration,
        cancel_event: Optional[asyncio.Event]
    ):
        if not await connector.initialize(configuration):
            validation = connector.validate_connection(configuration.connection_parameters)
            errors: List[str] = validation.error_messages() or ["Connection validation failed"]
            raise ConnectorValidationError(
                f"Failed to validate connection to data source: {'; '.join(errors)}",
                context={"connector_id": connector.id, "errors": errors}
            )

        connection = await connector.connect(cancel_event=cancel_event)
        if connection.success:
            return
        message = f"Failed to connect to data source: {connection.error_message}"
        context = {"connector_id": connector.id}
        if connection.is_timeout:
            raise ConnectionTimeoutError(message, context=context)
        if connection.is_cancelled:
            raise ConnectionCancelledError(message, context=context)
        raise ConnectorConnectionError(message, context=context)

    @staticmethod
    def _check_extraction(result: ExtractionResult):
        if result.success:
            return
        if result.is_cancelled:
            raise OperationCancelledError("Extraction was cancelled")
        if result.requires_full_reload:
            raise FullReloadRequiredError(result.error_message or "Full reload is required")
        raise ExtractionError(f"Failed to extract data: {result.error_message}")

    async def _handle_failure(self, job: IngestionJobDefinition, error: Exception) -> JobStatus:
        message = error.message if isinstance(error, IngestionException) else str(error)
        if isinstance(error, NonRetryableError):
            logger.error(f"Error executing job {job.id}: {message} (not retryable; the next run will fail the same way)")
        elif isinstance(error, RetryableError):
            logger.error(f"Error executing job {job.id}: {message} (transient; the next run may succeed)")
        else:
            logger.error(f"Error executing job {job.id}: {message}")

        try:
            failure_count = await self.jobs.increment_failure_count(job.id)
            await self.jobs.update_status(job.id, JobStatus.FAILED, message)
            await self._notify(job, JobStatus.FAILED, message)

            if failure_count >= job.max_retry_count:
                await self._auto_pause(job)
        except Exception as e:
            logger.error(f"Failed to record failure of job {job.id}: {e}")
        return JobStatus.FAILED

    async def _auto_pause(self, job: IngestionJobDefinition):
        logger.warning(
            f"Job {job.id} reached maximum retry count of {job.max_retry_count}. Auto-pausing job."
        )
        current = await self.jobs.get(job.id) or job
        current.is_paused = True
        await self.jobs.update(current)
        if current.cron_expression and self.backend is not None:
            self.backend.remove_if_exists(job.id)
        await self._notify(
            current,
            JobStatus.PAUSED,
            f"Job auto-paused after reaching maximum retry count of {job.max_retry_count}"
        )

    async def _notify(self, job: IngestionJobDefinition, status: JobStatus, message: Optional[str]):
        try:
            await self.notifications.send(job, status, message)
        except Exception as e:
            logger.error(f"Notification for job {job.id} failed: {e}")
