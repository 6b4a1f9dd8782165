"""
Pytest configuration and fixtures
"""

import pytest
from typing import Dict, List, Tuple
from unittest.mock import AsyncMock
import uuid

from connectors.factory import ConnectorFactory
from connectors.registry import create_default_registry
from connectors.sample import SampleConnector, SampleDataset
from credentials.manager import CredentialManager
from credentials.repository import InMemoryCredentialRepository
from ingestion.backends import JobHandler, SchedulingBackend, validate_cron
from ingestion.executor import JobExecutor
from ingestion.repository import InMemoryDataSourceRepository, InMemoryJobRepository
from ingestion.scheduler import IngestionJobScheduler
from schemas.job import DataSourceDefinition, IngestionJobDefinition

TEST_MASTER_KEY = "test-master-key-0123456789"


class RecordingBackend(SchedulingBackend):
    """Scheduling backend that records registrations instead of running them"""

    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone
        self.registrations: Dict[str, Tuple[str, JobHandler]] = {}
        self.enqueued: List[Tuple[str, JobHandler]] = []
        self._running = False

    def add_or_update(self, job_id: str, cron_expression: str, handler: JobHandler):
        validate_cron(cron_expression, self.timezone)
        self.registrations[job_id] = (cron_expression, handler)

    def remove_if_exists(self, job_id: str) -> bool:
        return self.registrations.pop(job_id, None) is not None

    def enqueue(self, handler: JobHandler) -> str:
        execution_id = f"once:{uuid.uuid4().hex}"
        self.enqueued.append((execution_id, handler))
        return execution_id

    def is_registered(self, job_id: str) -> bool:
        return job_id in self.registrations

    def start(self):
        self._running = True

    def shutdown(self):
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run_enqueued(self):
        """Run and clear every queued one-off execution"""
        queued, self.enqueued = self.enqueued, []
        for _, handler in queued:
            await handler()

    async def fire(self, job_id: str):
        """Simulate one cron tick of a recurring registration"""
        _, handler = self.registrations[job_id]
        await handler()


# ============================================================================
# Connectors
# ============================================================================

@pytest.fixture
def sample_params() -> Dict[str, str]:
    return {"server": "sample.local", "port": "1234", "apiKey": "k-123", "useTls": "true", "recordCount": "20"}


@pytest.fixture
def sample_dataset():
    return SampleDataset(record_count=20)


@pytest.fixture
def sample_connector(sample_dataset):
    return SampleConnector(dataset=sample_dataset)


@pytest.fixture
def registry():
    return create_default_registry()


@pytest.fixture
def factory(registry):
    return ConnectorFactory(registry)


# ============================================================================
# Credentials
# ============================================================================

@pytest.fixture
def master_key():
    return TEST_MASTER_KEY


@pytest.fixture
def credential_repository():
    return InMemoryCredentialRepository()


@pytest.fixture
def credential_manager(credential_repository, master_key):
    return CredentialManager(credential_repository, master_key=master_key)


# ============================================================================
# Jobs
# ============================================================================

@pytest.fixture
def job_repository():
    return InMemoryJobRepository()


@pytest.fixture
def data_source_repository():
    return InMemoryDataSourceRepository()


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def notifier():
    """Notification service double; every send reports success"""
    service = AsyncMock()
    service.send.return_value = True
    return service


@pytest.fixture
def executor(job_repository, data_source_repository, factory, credential_manager, notifier, backend):
    return JobExecutor(
        job_repository,
        data_source_repository,
        factory,
        credentials=credential_manager,
        notifications=notifier,
        backend=backend,
    )


@pytest.fixture
def scheduler(job_repository, backend, executor):
    return IngestionJobScheduler(job_repository, backend, executor)


@pytest.fixture
def sample_source(sample_params) -> DataSourceDefinition:
    return DataSourceDefinition(
        id="src-sample",
        name="Sample source",
        tenant_id="tenant-a",
        source_type="Sample",
        connection_parameters=sample_params,
    )


@pytest.fixture
def make_job():
    def build(**overrides) -> IngestionJobDefinition:
        values = {"name": "Nightly customers", "data_source_id": "src-sample", "tenant_id": "tenant-a"}
        values.update(overrides)
        return IngestionJobDefinition(**values)
    return build
