"""
Persistence for ingestion jobs and data sources.

The scheduler and executor work against the JobRepository and
DataSourceRepository interfaces and exchange pydantic definitions, never ORM
rows. In-memory implementations back tests and single-process demos; the
SQLAlchemy implementations use the shared async session maker.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional
import logging
import uuid

from sqlalchemy import select, delete, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from models.base import JobStatusType
from models.data_source import DataSource
from models.job import IngestionJob
from schemas.job import DataSourceDefinition, IngestionJobDefinition, JobStatus, utcnow

logger = logging.getLogger(__name__)


class JobRepository(ABC):

    @abstractmethod
    async def get(self, job_id: str) -> Optional[IngestionJobDefinition]:
        pass

    @abstractmethod
    async def list(self, tenant_id: Optional[str] = None, status: Optional[JobStatus] = None) -> List[IngestionJobDefinition]:
        pass

    @abstractmethod
    async def add(self, job: IngestionJobDefinition) -> IngestionJobDefinition:
        pass

    @abstractmethod
    async def update(self, job: IngestionJobDefinition) -> IngestionJobDefinition:
        pass

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        pass

    @abstractmethod
    async def update_status(self, job_id: str, status: JobStatus, message: Optional[str] = None):
        pass

    @abstractmethod
    async def record_execution(self, job_id: str, executed_at: datetime):
        pass

    @abstractmethod
    async def increment_failure_count(self, job_id: str) -> int:
        """Add one to the failure counter and return the new value"""
        pass

    @abstractmethod
    async def reset_failure_count(self, job_id: str):
        pass


class DataSourceRepository(ABC):

    @abstractmethod
    async def get(self, source_id: str) -> Optional[DataSourceDefinition]:
        pass

    @abstractmethod
    async def list(self, tenant_id: Optional[str] = None) -> List[DataSourceDefinition]:
        pass

    @abstractmethod
    async def add(self, source: DataSourceDefinition) -> DataSourceDefinition:
        pass

    @abstractmethod
    async def update(self, source: DataSourceDefinition) -> DataSourceDefinition:
        pass

    @abstractmethod
    async def delete(self, source_id: str) -> bool:
        pass


# ============================================================================
# In-memory
# ============================================================================

class InMemoryJobRepository(JobRepository):
    """Dictionary-backed job store; definitions are copied in and out"""

    def __init__(self):
        self._jobs: Dict[str, IngestionJobDefinition] = {}

    def _require(self, job_id: str) -> IngestionJobDefinition:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        return job

    async def get(self, job_id: str) -> Optional[IngestionJobDefinition]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    async def list(self, tenant_id: Optional[str] = None, status: Optional[JobStatus] = None) -> List[IngestionJobDefinition]:
        jobs = [
            job for job in self._jobs.values()
            if (tenant_id is None or job.tenant_id == tenant_id) and (status is None or job.status == status)
        ]
        jobs.sort(key=lambda job: job.created_at)
        return [job.model_copy(deep=True) for job in jobs]

    async def add(self, job: IngestionJobDefinition) -> IngestionJobDefinition:
        stored = job.model_copy(deep=True)
        if not stored.id:
            stored.id = str(uuid.uuid4())
        self._jobs[stored.id] = stored
        return stored.model_copy(deep=True)

    async def update(self, job: IngestionJobDefinition) -> IngestionJobDefinition:
        self._require(job.id)
        stored = job.model_copy(deep=True)
        stored.modified_at = utcnow()
        self._jobs[stored.id] = stored
        return stored.model_copy(deep=True)

    async def delete(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None

    async def update_status(self, job_id: str, status: JobStatus, message: Optional[str] = None):
        job = self._jobs.get(job_id)
        if job is None:
            return
        job.status = status
        if message is not None:
            job.last_execution_result = message
        job.modified_at = utcnow()

    async def record_execution(self, job_id: str, executed_at: datetime):
        job = self._jobs.get(job_id)
        if job is not None:
            job.last_execution_time = executed_at

    async def increment_failure_count(self, job_id: str) -> int:
        job = self._require(job_id)
        job.failure_count += 1
        return job.failure_count

    async def reset_failure_count(self, job_id: str):
        job = self._jobs.get(job_id)
        if job is not None:
            job.failure_count = 0


class InMemoryDataSourceRepository(DataSourceRepository):

    def __init__(self):
        self._sources: Dict[str, DataSourceDefinition] = {}

    async def get(self, source_id: str) -> Optional[DataSourceDefinition]:
        source = self._sources.get(source_id)
        return source.model_copy(deep=True) if source is not None else None

    async def list(self, tenant_id: Optional[str] = None) -> List[DataSourceDefinition]:
        return [
            source.model_copy(deep=True) for source in self._sources.values()
            if tenant_id is None or source.tenant_id == tenant_id
        ]

    async def add(self, source: DataSourceDefinition) -> DataSourceDefinition:
        self._sources[source.id] = source.model_copy(deep=True)
        return source

    async def update(self, source: DataSourceDefinition) -> DataSourceDefinition:
        if source.id not in self._sources:
            raise KeyError(source.id)
        self._sources[source.id] = source.model_copy(deep=True)
        return source

    async def delete(self, source_id: str) -> bool:
        return self._sources.pop(source_id, None) is not None


# ============================================================================
# SQLAlchemy
# ============================================================================

def _job_definition(row: IngestionJob) -> IngestionJobDefinition:
    return IngestionJobDefinition(
        id=row.id,
        name=row.name,
        description=row.description,
        data_source_id=row.data_source_id,
        tenant_id=row.tenant_id,
        cron_expression=row.cron_expression,
        status=JobStatus(row.status.value),
        is_paused=row.is_paused,
        failure_count=row.failure_count or 0,
        max_retry_count=row.max_retry_count,
        notification_config_json=row.notification_config_json,
        extraction_parameters_json=row.extraction_parameters_json,
        created_at=row.created_at,
        modified_at=row.modified_at,
        last_execution_time=row.last_execution_time,
        last_execution_result=row.last_execution_result,
    )


def _apply_job(row: IngestionJob, job: IngestionJobDefinition):
    row.name = job.name
    row.description = job.description
    row.data_source_id = job.data_source_id
    row.tenant_id = job.tenant_id
    row.cron_expression = job.cron_expression
    row.status = JobStatusType(job.status.value)
    row.is_paused = job.is_paused
    row.failure_count = job.failure_count
    row.max_retry_count = job.max_retry_count
    row.notification_config_json = job.notification_config_json
    row.extraction_parameters_json = job.extraction_parameters_json
    row.last_execution_time = job.last_execution_time
    row.last_execution_result = job.last_execution_result


class SqlAlchemyJobRepository(JobRepository):
    """Jobs in the `ingestion_jobs` table"""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def get(self, job_id: str) -> Optional[IngestionJobDefinition]:
        async with self._session_maker() as session:
            row = await session.get(IngestionJob, job_id)
            return _job_definition(row) if row is not None else None

    async def list(self, tenant_id: Optional[str] = None, status: Optional[JobStatus] = None) -> List[IngestionJobDefinition]:
        query = select(IngestionJob).order_by(IngestionJob.created_at)
        if tenant_id is not None:
            query = query.where(IngestionJob.tenant_id == tenant_id)
        if status is not None:
            query = query.where(IngestionJob.status == JobStatusType(status.value))
        async with self._session_maker() as session:
            result = await session.execute(query)
            return [_job_definition(row) for row in result.scalars().all()]

    async def add(self, job: IngestionJobDefinition) -> IngestionJobDefinition:
        async with self._session_maker() as session:
            row = IngestionJob(id=job.id or str(uuid.uuid4()), created_at=job.created_at)
            _apply_job(row, job)
            session.add(row)
            await session.commit()
            await session.refresh(row)
            logger.info(f"Created job {row.id} ({row.name})")
            return _job_definition(row)

    async def update(self, job: IngestionJobDefinition) -> IngestionJobDefinition:
        async with self._session_maker() as session:
            row = await session.get(IngestionJob, job.id)
            if row is None:
                raise KeyError(job.id)
            _apply_job(row, job)
            row.modified_at = utcnow()
            await session.commit()
            await session.refresh(row)
            return _job_definition(row)

    async def delete(self, job_id: str) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(delete(IngestionJob).where(IngestionJob.id == job_id))
            await session.commit()
            return result.rowcount > 0

    async def _update(self, job_id: str, **values):
        async with self._session_maker() as session:
            await session.execute(update(IngestionJob).where(IngestionJob.id == job_id).values(**values))
            await session.commit()

    async def update_status(self, job_id: str, status: JobStatus, message: Optional[str] = None):
        values = {"status": JobStatusType(status.value), "modified_at": utcnow()}
        if message is not None:
            values["last_execution_result"] = message
        await self._update(job_id, **values)

    async def record_execution(self, job_id: str, executed_at: datetime):
        await self._update(job_id, last_execution_time=executed_at)

    async def increment_failure_count(self, job_id: str) -> int:
        async with self._session_maker() as session:
            await session.execute(
                update(IngestionJob)
                .where(IngestionJob.id == job_id)
                .values(failure_count=IngestionJob.failure_count + 1)
            )
            await session.commit()
            result = await session.execute(select(IngestionJob.failure_count).where(IngestionJob.id == job_id))
            count = result.scalar_one_or_none()
            if count is None:
                raise KeyError(job_id)
            return count

    async def reset_failure_count(self, job_id: str):
        await self._update(job_id, failure_count=0)


def _source_definition(row: DataSource) -> DataSourceDefinition:
    return DataSourceDefinition(
        id=row.id,
        name=row.name,
        tenant_id=row.tenant_id,
        source_type=row.source_type,
        connector_id=row.connector_id,
        connection_parameters=dict(row.connection_parameters or {}),
        credential_keys=dict(row.credential_keys or {}),
        is_enabled=row.is_enabled,
    )


def _apply_source(row: DataSource, source: DataSourceDefinition):
    row.name = source.name
    row.tenant_id = source.tenant_id
    row.source_type = source.source_type
    row.connector_id = source.connector_id
    row.connection_parameters = dict(source.connection_parameters)
    row.credential_keys = dict(source.credential_keys)
    row.is_enabled = source.is_enabled


class SqlAlchemyDataSourceRepository(DataSourceRepository):
    """Data sources in the `data_sources` table"""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def get(self, source_id: str) -> Optional[DataSourceDefinition]:
        async with self._session_maker() as session:
            row = await session.get(DataSource, source_id)
            return _source_definition(row) if row is not None else None

    async def list(self, tenant_id: Optional[str] = None) -> List[DataSourceDefinition]:
        query = select(DataSource).order_by(DataSource.name)
        if tenant_id is not None:
            query = query.where(DataSource.tenant_id == tenant_id)
        async with self._session_maker() as session:
            result = await session.execute(query)
            return [_source_definition(row) for row in result.scalars().all()]

    async def add(self, source: DataSourceDefinition) -> DataSourceDefinition:
        async with self._session_maker() as session:
            row = DataSource(id=source.id)
            _apply_source(row, source)
            session.add(row)
            await session.commit()
            return _source_definition(row)

    async def update(self, source: DataSourceDefinition) -> DataSourceDefinition:
        async with self._session_maker() as session:
            row = await session.get(DataSource, source.id)
            if row is None:
                raise KeyError(source.id)
            _apply_source(row, source)
            await session.commit()
            return _source_definition(row)

    async def delete(self, source_id: str) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(delete(DataSource).where(DataSource.id == source_id))
            await session.commit()
            return result.rowcount > 0
