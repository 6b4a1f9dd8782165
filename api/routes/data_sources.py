"""
Data source endpoints. Secret connection parameters are masked in every response.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from api.dependencies import get_data_sources, get_registry
from connectors.registry import ConnectorRegistry
from ingestion.repository import DataSourceRepository
from schemas.api import DataSourceCreateRequest
from schemas.job import DataSourceDefinition
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/data-sources", tags=["Data Sources"])


def _connector_type(registry: ConnectorRegistry, source: DataSourceDefinition):
    if source.connector_id:
        registration = registry.get(source.connector_id)
        if registration is not None:
            return registration.connector_type
    candidates = registry.get_by_source_type(source.source_type)
    return candidates[0].connector_type if candidates else None


def _masked(registry: ConnectorRegistry, source: DataSourceDefinition) -> DataSourceDefinition:
    connector_type = _connector_type(registry, source)
    if connector_type is None:
        return source
    return source.model_copy(update={
        "connection_parameters": connector_type.mask_parameters(source.connection_parameters)
    })


@router.get("", response_model=List[DataSourceDefinition])
async def list_data_sources(
    tenant_id: Optional[str] = Query(None, description="Filter by tenant"),
    data_sources: DataSourceRepository = Depends(get_data_sources),
    registry: ConnectorRegistry = Depends(get_registry)
):
    return [_masked(registry, source) for source in await data_sources.list(tenant_id=tenant_id)]


@router.post("", response_model=DataSourceDefinition, status_code=201)
async def create_data_source(
    body: DataSourceCreateRequest,
    request: Request,
    data_sources: DataSourceRepository = Depends(get_data_sources),
    registry: ConnectorRegistry = Depends(get_registry)
):
    """Register a data source; its source type must be served by a registered connector"""
    request_id = getattr(request.state, "request_id", None)
    source = body.to_definition()

    connector_type = _connector_type(registry, source)
    if connector_type is None:
        raise HTTPException(
            status_code=422,
            detail=f"No connector registered for data source type: {source.source_type}"
        )
    if await data_sources.get(source.id) is not None:
        raise HTTPException(status_code=409, detail=f"Data source {source.id} already exists")

    stored = await data_sources.add(source)
    logger.info(
        f"[{request_id}] Created data source {stored.id} ({stored.source_type}) "
        f"with parameters {connector_type.mask_parameters(stored.connection_parameters)}"
    )
    return _masked(registry, stored)


@router.get("/{source_id}", response_model=DataSourceDefinition)
async def get_data_source(
    source_id: str,
    data_sources: DataSourceRepository = Depends(get_data_sources),
    registry: ConnectorRegistry = Depends(get_registry)
):
    source = await data_sources.get(source_id)
    if source is None:
        raise HTTPException(status_code=404, detail=f"Data source {source_id} not found")
    return _masked(registry, source)


@router.delete("/{source_id}", status_code=204)
async def delete_data_source(
    source_id: str,
    request: Request,
    data_sources: DataSourceRepository = Depends(get_data_sources)
):
    if not await data_sources.delete(source_id):
        raise HTTPException(status_code=404, detail=f"Data source {source_id} not found")
    logger.info(f"[{getattr(request.state, 'request_id', None)}] Deleted data source {source_id}")
