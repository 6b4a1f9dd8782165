"""
Connector factory - turns registry ids into connector instances
"""

from typing import Callable, List, Optional, Type, TypeVar
import logging

from core.exceptions import ConnectorInitializationError, ConnectorNotRegisteredError
from connectors.base import DataSourceConnector
from connectors.registry import ConnectorRegistry
from schemas.connector import ConnectorConfiguration

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=DataSourceConnector)

# Returns an instance for a connector class, or None to fall back to construction
InstanceProvider = Callable[[Type[DataSourceConnector]], Optional[DataSourceConnector]]


class ConnectorFactory:
    """
    Creates connector instances.

    An optional provider (typically a container lookup) is asked first;
    direct construction is the fallback.
    """

    def __init__(self, registry: ConnectorRegistry, provider: Optional[InstanceProvider] = None):
        if registry is None:
            raise ValueError("registry is required")
        self.registry = registry
        self.provider = provider

    def _instantiate(self, connector_type: Type[T]) -> T:
        if self.provider is not None:
            try:
                instance = self.provider(connector_type)
            except Exception as e:
                logger.warning(f"Provider failed for {connector_type.__name__}, constructing directly: {e}")
                instance = None
            if instance is not None:
                return instance
        try:
            return connector_type()
        except Exception as e:
            raise ConnectorInitializationError(
                f"Failed to create connector {connector_type.__name__}: {e}",
                context={"type": connector_type.__name__},
                original_exception=e
            )

    def create(self, connector_id: str) -> DataSourceConnector:
        if not connector_id:
            raise ValueError("connector_id is required")
        registration = self.registry.get(connector_id)
        if registration is None:
            raise ConnectorNotRegisteredError(
                f"Connector with ID {connector_id} is not registered",
                context={"connector_id": connector_id}
            )
        connector = self._instantiate(registration.connector_type)
        logger.debug(f"Created connector {connector_id}")
        return connector

    def create_typed(self, connector_type: Type[T]) -> T:
        """Create by class; the class does not have to be registered"""
        if connector_type is None:
            raise ValueError("connector_type is required")
        for registration in self.registry.get_registered():
            if registration.connector_type is connector_type:
                return self.create(registration.id)
        return self._instantiate(connector_type)

    async def create_and_initialize(
        self,
        connector_id: str,
        configuration: ConnectorConfiguration
    ) -> DataSourceConnector:
        """Create and initialize; a connector that fails to initialize is disposed"""
        if configuration is None:
            raise ValueError("configuration is required")
        connector = self.create(connector_id)
        try:
            initialized = await connector.initialize(configuration)
        except Exception as e:
            await connector.dispose()
            raise ConnectorInitializationError(
                f"Failed to initialize connector {connector_id}: {e}",
                context={"connector_id": connector_id},
                original_exception=e
            )
        if not initialized:
            await connector.dispose()
            raise ConnectorInitializationError(
                f"Failed to initialize connector {connector_id}",
                context={"connector_id": connector_id}
            )
        return connector

    def available_ids(self) -> List[str]:
        return [r.id for r in self.registry.get_registered()]

    def ids_for_source_type(self, source_type: str) -> List[str]:
        return [r.id for r in self.registry.get_by_source_type(source_type)]
