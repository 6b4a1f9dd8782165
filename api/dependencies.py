"""
FastAPI dependencies.

The ingestion services are wired once per process by init_services() and
handed to the routes through get_services(). Tests install their own
services with init_services() or app.dependency_overrides.
"""

from dataclasses import dataclass
from typing import Optional
import logging

from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.database import get_session_maker
from connectors.factory import ConnectorFactory
from connectors.registry import ConnectorRegistry, create_default_registry
from credentials.manager import CredentialManager
from credentials.repository import SqlAlchemyCredentialRepository
from ingestion.backends import APSchedulerBackend, SchedulingBackend
from ingestion.executor import JobExecutor
from ingestion.repository import (
    DataSourceRepository,
    JobRepository,
    SqlAlchemyDataSourceRepository,
    SqlAlchemyJobRepository,
)
from ingestion.scheduler import IngestionJobScheduler

logger = logging.getLogger(__name__)


@dataclass
class IngestionServices:
    registry: ConnectorRegistry
    factory: ConnectorFactory
    jobs: JobRepository
    data_sources: DataSourceRepository
    scheduler: IngestionJobScheduler
    credentials: Optional[CredentialManager] = None


def build_services(
    session_maker: Optional[async_sessionmaker] = None,
    backend: Optional[SchedulingBackend] = None
) -> IngestionServices:
    """Wire the database-backed services used by the API process"""
    session_maker = session_maker or get_session_maker()
    registry = create_default_registry()
    factory = ConnectorFactory(registry)
    jobs = SqlAlchemyJobRepository(session_maker)
    data_sources = SqlAlchemyDataSourceRepository(session_maker)

    credentials = None
    if settings.CREDENTIAL_ENCRYPTION_KEY:
        credentials = CredentialManager(SqlAlchemyCredentialRepository(session_maker))
    else:
        logger.warning("CREDENTIAL_ENCRYPTION_KEY is not set; credential-backed data sources will fail")

    backend = backend or APSchedulerBackend()
    executor = JobExecutor(jobs, data_sources, factory, credentials, backend=backend)
    scheduler = IngestionJobScheduler(jobs, backend, executor)
    return IngestionServices(
        registry=registry,
        factory=factory,
        jobs=jobs,
        data_sources=data_sources,
        scheduler=scheduler,
        credentials=credentials,
    )


_services: Optional[IngestionServices] = None


def init_services(services: Optional[IngestionServices] = None) -> IngestionServices:
    """Install `services`, or build the default ones if none are installed yet"""
    global _services
    if services is not None:
        _services = services
    elif _services is None:
        _services = build_services()
    return _services


def reset_services():
    global _services
    _services = None


def get_services() -> IngestionServices:
    if _services is None:
        raise RuntimeError("Ingestion services are not initialized")
    return _services


def get_scheduler(services: IngestionServices = Depends(get_services)) -> IngestionJobScheduler:
    return services.scheduler


def get_registry(services: IngestionServices = Depends(get_services)) -> ConnectorRegistry:
    return services.registry


def get_factory(services: IngestionServices = Depends(get_services)) -> ConnectorFactory:
    return services.factory


def get_data_sources(services: IngestionServices = Depends(get_services)) -> DataSourceRepository:
    return services.data_sources
