"""
End-to-end tests: jobs scheduled, executed and recorded through the full stack
"""

import asyncio
import json
import os
import pytest
import pytest_asyncio

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.dependencies import build_services
from core.config import settings
from ingestion.backends import APSchedulerBackend
from ingestion.executor import JobExecutor
from ingestion.scheduler import IngestionJobScheduler
from models.base import Base
from schemas.job import DataSourceDefinition, JobStatus


async def wait_for_status(repository, job_id, statuses, timeout=5.0):
    """Poll until the job reaches one of `statuses`"""
    async def poll():
        while True:
            job = await repository.get(job_id)
            if job is not None and job.status in statuses:
                return job
            await asyncio.sleep(0.02)
    return await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture
def documents(tmp_path):
    """notes.txt, report.pdf and data/export.csv"""
    (tmp_path / "data").mkdir()
    (tmp_path / "notes.txt").write_text("meeting notes", encoding="utf-8")
    (tmp_path / "report.pdf").write_text("%PDF-1.4", encoding="utf-8")
    (tmp_path / "data" / "export.csv").write_text("id,total\n1,10\n2,20\n", encoding="utf-8")
    for index, name in enumerate(["notes.txt", "report.pdf", "data/export.csv"], start=1):
        os.utime(tmp_path / name, (index * 1000, index * 1000))
    return tmp_path


@pytest.fixture
def file_source(documents):
    return DataSourceDefinition(
        id="src-files",
        name="Shared documents",
        tenant_id="tenant-a",
        source_type="FileRepository",
        connection_parameters={"rootPath": str(documents)},
    )


class TestFileRepositoryJob:
    """A file repository job with transformation rules"""

    @pytest.mark.asyncio
    async def test_triggered_run(self, scheduler, backend, job_repository, data_source_repository,
                                 file_source, notifier, make_job):
        await data_source_repository.add(file_source)
        job_id = await scheduler.schedule_job(make_job(
            data_source_id="src-files",
            extraction_parameters_json=json.dumps({
                "extraction": {"target_structures": ["text_files"]},
                "transformation": {"rules": [
                    {"id": "skip-csv", "type": "filter", "parameters": {"field": "extension", "value": ".csv"}},
                    {"id": "kind", "type": "add", "order": 1, "target_fields": ["kind"],
                     "parameters": {"value": "note"}},
                ]},
            }),
        ))

        assert await scheduler.trigger_job_now(job_id)
        await backend.run_enqueued()

        job = await job_repository.get(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.last_execution_result == "Successfully extracted 1 items"
        notifier.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_root_fails_validation(self, scheduler, backend, job_repository,
                                                 data_source_repository, file_source, tmp_path, make_job):
        params = {"rootPath": str(tmp_path / "gone")}
        await data_source_repository.add(file_source.model_copy(update={"connection_parameters": params}))
        job_id = await scheduler.schedule_job(make_job(data_source_id="src-files"))

        await scheduler.trigger_job_now(job_id)
        await backend.run_enqueued()

        job = await job_repository.get(job_id)
        assert job.status is JobStatus.FAILED
        assert "Root path does not exist" in job.last_execution_result


class TestAPSchedulerPipeline:
    """The real scheduling engine drives executions"""

    @pytest_asyncio.fixture
    async def engine(self, job_repository, data_source_repository, factory, notifier):
        backend = APSchedulerBackend(timezone="UTC", max_workers=2)
        executor = JobExecutor(job_repository, data_source_repository, factory,
                               notifications=notifier, backend=backend)
        scheduler = IngestionJobScheduler(job_repository, backend, executor)
        yield scheduler, backend
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_trigger_runs_on_the_scheduler(self, engine, job_repository, data_source_repository,
                                                 sample_source, make_job):
        scheduler, _ = engine
        await data_source_repository.add(sample_source)
        job_id = await scheduler.schedule_job(make_job(cron_expression="0 2 * * *"))
        await scheduler.start()

        assert await scheduler.trigger_job_now(job_id)
        job = await wait_for_status(job_repository, job_id, {JobStatus.COMPLETED, JobStatus.FAILED})
        assert job.status is JobStatus.COMPLETED
        assert job.last_execution_result == "Successfully extracted 20 items"

    @pytest.mark.asyncio
    async def test_auto_pause_unregisters_the_cron_job(self, engine, job_repository, notifier, make_job):
        scheduler, backend = engine
        job_id = await scheduler.schedule_job(
            make_job(data_source_id="nope", cron_expression="*/5 * * * *", max_retry_count=1)
        )
        await scheduler.start()
        assert backend.is_registered(job_id)

        await scheduler.trigger_job_now(job_id)
        await wait_for_status(job_repository, job_id, {JobStatus.FAILED})

        async def paused():
            while not (await job_repository.get(job_id)).is_paused or backend.is_registered(job_id):
                await asyncio.sleep(0.02)
        await asyncio.wait_for(paused(), timeout=5)

        job = await job_repository.get(job_id)
        assert job.failure_count == 1
        assert job.status is JobStatus.FAILED
        await asyncio.wait_for(_notified(notifier, 2), timeout=5)
        assert [c.args[1] for c in notifier.send.await_args_list] == [JobStatus.FAILED, JobStatus.PAUSED]


async def _notified(notifier, count):
    while notifier.send.await_count < count:
        await asyncio.sleep(0.02)


class TestDatabaseBackedServices:
    """Services wired the way the API process wires them"""

    @pytest_asyncio.fixture
    async def session_maker(self):
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_credential_backed_source(self, session_maker, backend, sample_source, master_key,
                                            monkeypatch, make_job):
        monkeypatch.setattr(settings, "CREDENTIAL_ENCRYPTION_KEY", master_key)
        services = build_services(session_maker, backend=backend)
        assert services.credentials is not None

        await services.credentials.store("sample/api-key", "k-123", source="sample")
        params = dict(sample_source.connection_parameters)
        del params["apiKey"]
        await services.data_sources.add(sample_source.model_copy(update={
            "connection_parameters": params,
            "credential_keys": {"apiKey": "sample/api-key"},
        }))

        job_id = await services.scheduler.schedule_job(make_job(
            extraction_parameters_json=json.dumps({"target_structures": ["orders"], "max_records": 5}),
        ))
        await services.scheduler.trigger_job_now(job_id)
        await backend.run_enqueued()
        await services.credentials.drain()

        job = await services.jobs.get(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.last_execution_result == "Successfully extracted 5 items"
        assert job.failure_count == 0
        assert (await services.credentials.get_info("sample/api-key")).access_count == 1

    @pytest.mark.asyncio
    async def test_without_encryption_key(self, session_maker, backend, monkeypatch):
        monkeypatch.setattr(settings, "CREDENTIAL_ENCRYPTION_KEY", None)
        assert build_services(session_maker, backend=backend).credentials is None
