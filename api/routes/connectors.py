"""
Connector catalog endpoints: list, describe, validate parameters, test connections
"""

from fastapi import APIRouter, Depends, Request
from api.dependencies import get_factory, get_registry
from connectors.factory import ConnectorFactory
from connectors.registry import ConnectorRegistry
from core.exceptions import ConnectorNotRegisteredError
from schemas.api import (
    ConnectionParametersRequest,
    ConnectionTestResponse,
    ConnectorDetail,
    ConnectorSummary,
    ValidationResponse,
)
from typing import List
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/connectors", tags=["Connectors"])


def _registration(registry: ConnectorRegistry, connector_id: str):
    registration = registry.get(connector_id)
    if registration is None:
        raise ConnectorNotRegisteredError(
            f"Connector with ID {connector_id} is not registered",
            context={"connector_id": connector_id}
        )
    return registration


@router.get("", response_model=List[ConnectorSummary])
async def list_connectors(registry: ConnectorRegistry = Depends(get_registry)):
    registrations = sorted(registry.get_registered(), key=lambda r: r.id)
    return [ConnectorSummary.from_metadata(r.connector_type.describe_metadata()) for r in registrations]


@router.get("/{connector_id}", response_model=ConnectorDetail)
async def get_connector(connector_id: str, registry: ConnectorRegistry = Depends(get_registry)):
    """Metadata, capabilities and the connection-parameter contract of one connector"""
    connector_type = _registration(registry, connector_id).connector_type
    return ConnectorDetail.describe(connector_type.describe_metadata(), connector_type.describe_parameters())


@router.post("/{connector_id}/validate", response_model=ValidationResponse)
async def validate_parameters(
    connector_id: str,
    body: ConnectionParametersRequest,
    request: Request,
    factory: ConnectorFactory = Depends(get_factory)
):
    """Check connection parameters without connecting"""
    request_id = getattr(request.state, "request_id", None)
    connector = factory.create(connector_id)
    try:
        logger.info(
            f"[{request_id}] Validating parameters for {connector_id}: "
            f"{connector.mask_parameters(body.parameters)}"
        )
        result = connector.validate_connection(body.parameters)
    finally:
        await connector.dispose()
    return ValidationResponse.from_result(result)


@router.post("/{connector_id}/test-connection", response_model=ConnectionTestResponse)
async def test_connection(
    connector_id: str,
    body: ConnectionParametersRequest,
    request: Request,
    factory: ConnectorFactory = Depends(get_factory)
):
    """Connect with a throwaway session and disconnect straight away"""
    request_id = getattr(request.state, "request_id", None)
    connector = factory.create(connector_id)
    try:
        logger.info(
            f"[{request_id}] Testing connection for {connector_id}: "
            f"{connector.mask_parameters(body.parameters)}"
        )
        result = await connector.test_connection(body.parameters)
    finally:
        await connector.dispose()
    return ConnectionTestResponse.from_result(result)
