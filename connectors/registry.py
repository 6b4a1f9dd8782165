"""
Connector registry - maps connector ids to connector implementations.

Registration reads the connector's static self-description, so nothing is
instantiated here. Re-registering an id replaces the earlier entry and logs it.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from types import ModuleType
from typing import Dict, List, Optional, Type
import importlib
import inspect
import logging
import pkgutil
import threading

from core.exceptions import InvalidConnectorTypeError
from connectors.base import DataSourceConnector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectorRegistration:
    """Registered connector implementation"""
    id: str
    name: str
    source_type: str
    connector_type: Type[DataSourceConnector]
    registered_at: datetime

    def matches_source_type(self, source_type: str) -> bool:
        wanted = (source_type or "").lower()
        if self.source_type.lower() == wanted:
            return True
        aliases = self.connector_type.describe_metadata().capabilities.supported_source_types
        return any(alias.lower() == wanted for alias in aliases)


class ConnectorRegistry:
    """Thread-safe registry of available connector types"""

    def __init__(self):
        self._registrations: Dict[str, ConnectorRegistration] = {}
        self._lock = threading.Lock()

    def register(self, connector_type: Type[DataSourceConnector]) -> ConnectorRegistration:
        if connector_type is None:
            raise ValueError("connector_type is required")
        if not inspect.isclass(connector_type) or not issubclass(connector_type, DataSourceConnector):
            raise InvalidConnectorTypeError(
                f"{connector_type!r} is not a connector",
                context={"type": repr(connector_type)}
            )
        if inspect.isabstract(connector_type):
            raise InvalidConnectorTypeError(
                f"{connector_type.__name__} is abstract",
                context={"type": connector_type.__name__}
            )

        try:
            metadata = connector_type.describe_metadata()
        except NotImplementedError as e:
            metadata = None
            cause = e
        else:
            cause = None
        if metadata is None or not metadata.id:
            raise InvalidConnectorTypeError(
                f"{connector_type.__name__} does not describe its metadata",
                context={"type": connector_type.__name__},
                original_exception=cause
            )

        registration = ConnectorRegistration(
            id=metadata.id,
            name=metadata.name,
            source_type=metadata.source_type,
            connector_type=connector_type,
            registered_at=datetime.now(timezone.utc),
        )
        with self._lock:
            previous = self._registrations.get(metadata.id)
            self._registrations[metadata.id] = registration

        if previous is not None and previous.connector_type is not connector_type:
            logger.warning(
                f"Connector {metadata.id} re-registered: "
                f"{previous.connector_type.__name__} replaced by {connector_type.__name__}"
            )
        else:
            logger.info(f"Registered connector {metadata.id} ({metadata.source_type})")
        return registration

    def unregister(self, connector_id: str) -> bool:
        with self._lock:
            removed = self._registrations.pop(connector_id, None)
        if removed is not None:
            logger.info(f"Unregistered connector {connector_id}")
        return removed is not None

    def get(self, connector_id: str) -> Optional[ConnectorRegistration]:
        with self._lock:
            return self._registrations.get(connector_id)

    def get_registered(self) -> List[ConnectorRegistration]:
        with self._lock:
            return list(self._registrations.values())

    def get_by_source_type(self, source_type: str) -> List[ConnectorRegistration]:
        return [r for r in self.get_registered() if r.matches_source_type(source_type)]

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._registrations)

    def __contains__(self, connector_id: str) -> bool:
        return self.get(connector_id) is not None

    def register_from_module(self, module: ModuleType) -> int:
        """Register every concrete connector class defined in `module`"""
        registered = 0
        for _, candidate in inspect.getmembers(module, inspect.isclass):
            if candidate.__module__ != module.__name__:
                continue
            if not issubclass(candidate, DataSourceConnector) or inspect.isabstract(candidate):
                continue
            try:
                self.register(candidate)
                registered += 1
            except Exception as e:
                logger.error(f"Failed to register {candidate.__name__} from {module.__name__}: {e}")
        return registered

    def discover(self, package: str = "connectors") -> int:
        """Import every module in `package` and register the connectors found"""
        root = importlib.import_module(package)
        registered = 0
        for info in pkgutil.iter_modules(root.__path__, prefix=f"{package}."):
            try:
                module = importlib.import_module(info.name)
            except Exception as e:
                logger.error(f"Failed to import connector module {info.name}: {e}")
                continue
            registered += self.register_from_module(module)
        logger.info(f"Discovered {registered} connectors in {package}")
        return registered


def create_default_registry() -> ConnectorRegistry:
    """Registry holding the built-in connectors"""
    from connectors.file_repository import FileRepositoryConnector
    from connectors.mssql import SqlServerConnector
    from connectors.mysql import MySqlConnector
    from connectors.postgres import PostgreSqlConnector
    from connectors.sample import SampleConnector

    registry = ConnectorRegistry()
    for connector_type in (
        SqlServerConnector,
        PostgreSqlConnector,
        MySqlConnector,
        FileRepositoryConnector,
        SampleConnector,
    ):
        registry.register(connector_type)
    return registry
