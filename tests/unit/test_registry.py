"""
Tests for the connector registry and factory
"""

import pytest
import types
from unittest.mock import Mock

from connectors import sample as sample_module
from connectors.factory import ConnectorFactory
from connectors.registry import ConnectorRegistry
from connectors.sample import SampleConnector
from core.exceptions import (
    ConnectorInitializationError,
    ConnectorNotRegisteredError,
    InvalidConnectorTypeError,
)
from schemas.connector import ConnectorConfiguration, ConnectorMetadata


class RenamedSampleConnector(SampleConnector):
    """Same id as the sample connector"""


class NotAConnector:
    pass


class TestRegistry:
    """Registration, lookup and discovery"""

    def test_default_registry_has_builtin_connectors(self, registry):
        assert registry.count == 5
        for connector_id in (
            "mssql-connector",
            "postgresql-connector",
            "mysql-connector",
            "file-repository-connector",
            "sample-connector",
        ):
            assert connector_id in registry

    def test_register_reads_static_metadata(self):
        registry = ConnectorRegistry()
        registration = registry.register(SampleConnector)
        assert registration.id == "sample-connector"
        assert registration.source_type == "Sample"
        assert registration.connector_type is SampleConnector
        assert registration.registered_at is not None

    def test_reregistration_overwrites(self, caplog):
        registry = ConnectorRegistry()
        registry.register(SampleConnector)
        registry.register(RenamedSampleConnector)
        assert registry.count == 1
        assert registry.get("sample-connector").connector_type is RenamedSampleConnector
        assert "re-registered" in caplog.text

    def test_rejects_non_connectors(self):
        registry = ConnectorRegistry()
        with pytest.raises(InvalidConnectorTypeError):
            registry.register(NotAConnector)
        with pytest.raises(ValueError):
            registry.register(None)

    def test_rejects_missing_metadata(self):
        class Anonymous(SampleConnector):
            @classmethod
            def describe_metadata(cls):
                return ConnectorMetadata(id="", name="", source_type="")

        with pytest.raises(InvalidConnectorTypeError):
            ConnectorRegistry().register(Anonymous)

    def test_get_by_source_type_is_case_insensitive(self, registry):
        assert [r.id for r in registry.get_by_source_type("postgresql")] == ["postgresql-connector"]
        assert [r.id for r in registry.get_by_source_type("SQLSERVER")] == ["mssql-connector"]
        assert registry.get_by_source_type("unknown") == []

    def test_unregister(self, registry):
        assert registry.unregister("sample-connector") is True
        assert registry.unregister("sample-connector") is False
        assert registry.get("sample-connector") is None

    def test_register_from_module(self):
        registry = ConnectorRegistry()
        assert registry.register_from_module(sample_module) == 1
        assert "sample-connector" in registry

    def test_register_from_module_skips_imported_classes(self):
        module = types.ModuleType("fake_connectors")
        module.SampleConnector = SampleConnector
        assert ConnectorRegistry().register_from_module(module) == 0

    def test_discover_package(self):
        registry = ConnectorRegistry()
        assert registry.discover("connectors") == 5


class TestFactory:
    """Instance creation"""

    def test_create(self, factory):
        connector = factory.create("sample-connector")
        assert isinstance(connector, SampleConnector)
        assert factory.create("sample-connector") is not connector

    def test_create_unknown(self, factory):
        with pytest.raises(ConnectorNotRegisteredError):
            factory.create("nope")
        with pytest.raises(ValueError):
            factory.create("")

    def test_provider_is_asked_first(self, registry):
        provided = SampleConnector()
        factory = ConnectorFactory(registry, provider=lambda connector_type: provided)
        assert factory.create("sample-connector") is provided

    def test_provider_failure_falls_back_to_construction(self, registry):
        provider = Mock(side_effect=RuntimeError("container down"))
        factory = ConnectorFactory(registry, provider=provider)
        assert isinstance(factory.create("sample-connector"), SampleConnector)
        provider.assert_called_once_with(SampleConnector)

    def test_create_typed_for_unregistered_type(self):
        factory = ConnectorFactory(ConnectorRegistry())
        assert isinstance(factory.create_typed(SampleConnector), SampleConnector)

    def test_ids_for_source_type(self, factory):
        assert factory.ids_for_source_type("FileRepository") == ["file-repository-connector"]
        assert "sample-connector" in factory.available_ids()

    @pytest.mark.asyncio
    async def test_create_and_initialize(self, factory, sample_params):
        configuration = ConnectorConfiguration(connector_id="sample-connector", connection_parameters=sample_params)
        connector = await factory.create_and_initialize("sample-connector", configuration)
        assert connector.configuration == configuration
        assert not connector.is_disposed

    @pytest.mark.asyncio
    async def test_failed_initialize_disposes_instance(self, registry):
        created = []

        def provider(connector_type):
            instance = connector_type()
            created.append(instance)
            return instance

        factory = ConnectorFactory(registry, provider=provider)
        configuration = ConnectorConfiguration(connector_id="sample-connector", connection_parameters={})
        with pytest.raises(ConnectorInitializationError):
            await factory.create_and_initialize("sample-connector", configuration)
        assert created[0].is_disposed
