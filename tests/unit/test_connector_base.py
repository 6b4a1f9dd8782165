"""
Tests for the connector contract: lifecycle, validation, state notifications
"""

import asyncio
import pytest
from typing import Any, Dict, List

from connectors.base import (
    ConnectionState,
    ConnectorListener,
    DataSourceConnector,
    get_bool_param,
    get_int_param,
    get_param,
    run_with_deadline,
)
from connectors.sample import SampleConnector
from core.exceptions import ConnectorDisposedError, ConnectorStateError, OperationCancelledError
from schemas.connector import ConnectionParameter, ConnectorConfiguration, ConnectorMetadata
from schemas.extraction import ExtractionParameters, ExtractionResult


class RecordingListener(ConnectorListener):

    def __init__(self):
        self.transitions = []
        self.errors = []

    def on_state_changed(self, connector_id, old_state, new_state):
        self.transitions.append((old_state, new_state))

    def on_error(self, connector_id, operation, message, exception=None):
        self.errors.append((operation, message))


class SlowConnector(DataSourceConnector):
    """Connector whose backend never answers within the timeout"""

    @classmethod
    def describe_metadata(cls) -> ConnectorMetadata:
        return ConnectorMetadata(id="slow-connector", name="Slow", source_type="Slow")

    @classmethod
    def describe_parameters(cls) -> List[ConnectionParameter]:
        return [ConnectionParameter("connectionTimeout", "Timeout", type="integer", min_value=0)]

    async def _open_connection(self, params: Dict[str, Any]) -> Dict[str, Any]:
        await asyncio.sleep(10)
        return {}

    async def _close_connection(self):
        pass

    async def _discover(self, filter):
        return []

    async def _extract(self, params, context):
        return ExtractionResult.ok([])


class TestParameterHelpers:
    """Case-insensitive parameter lookup"""

    def test_get_param_ignores_case_and_blanks(self):
        params = {"Host": "db", "Port": " ", "useSsl": "Yes"}
        assert get_param(params, "host") == "db"
        assert get_param(params, "port", "5432") == "5432"
        assert get_bool_param(params, "USESSL", False) is True
        assert get_int_param({"port": "x"}, "port", 10) == 10
        assert get_param(None, "host") is None


class TestValidation:
    """Generic validation derived from describe_parameters()"""

    def test_valid_parameters(self, sample_connector, sample_params):
        result = sample_connector.validate_connection(sample_params)
        assert result.is_valid
        assert result.warnings == []

    def test_missing_required_parameter(self, sample_connector):
        result = sample_connector.validate_connection({"server": "sample.local"})
        assert not result.is_valid
        assert result.error_messages() == ["apiKey: API Key is required"]

    def test_integer_range_and_pattern(self, sample_connector, sample_params):
        params = dict(sample_params, port="70000", server="bad host!")
        result = sample_connector.validate_connection(params)
        fields = {issue.field_name for issue in result.errors}
        assert fields == {"port", "server"}

    def test_boolean_typing_and_warning(self, sample_connector, sample_params):
        invalid = sample_connector.validate_connection(dict(sample_params, useTls="maybe"))
        assert [issue.field_name for issue in invalid.errors] == ["useTls"]

        insecure = sample_connector.validate_connection(dict(sample_params, useTls="false"))
        assert insecure.is_valid
        assert len(insecure.warnings) == 1

    def test_validation_does_not_change_state(self, sample_connector, sample_params):
        sample_connector.validate_connection(sample_params)
        assert sample_connector.connection_state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_initialize_returns_false_for_invalid_configuration(self, sample_connector):
        configuration = ConnectorConfiguration(connector_id="sample-connector", connection_parameters={})
        assert await sample_connector.initialize(configuration) is False
        assert sample_connector.connection_state is ConnectionState.DISCONNECTED


class TestLifecycle:
    """Connection state machine"""

    @pytest.mark.asyncio
    async def test_connect_and_disconnect_transitions(self, sample_dataset, sample_params):
        listener = RecordingListener()
        connector = SampleConnector(listener=listener, dataset=sample_dataset)

        result = await connector.connect(sample_params)
        assert result.success
        assert result.connection_id.startswith("sample-")
        assert result.server_version == "sample-1.0"
        assert connector.connection_state is ConnectionState.CONNECTED

        assert await connector.disconnect() is True
        assert listener.transitions == [
            (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING),
            (ConnectionState.CONNECTING, ConnectionState.CONNECTED),
            (ConnectionState.CONNECTED, ConnectionState.DISCONNECTING),
            (ConnectionState.DISCONNECTING, ConnectionState.DISCONNECTED),
        ]
        assert connector.connection_id is None

    @pytest.mark.asyncio
    async def test_connect_uses_configured_parameters(self, sample_connector, sample_params):
        configuration = ConnectorConfiguration(connector_id="sample-connector", connection_parameters=sample_params)
        assert await sample_connector.initialize(configuration)
        assert (await sample_connector.connect()).success

    @pytest.mark.asyncio
    async def test_connect_twice_reports_already_connected(self, sample_connector, sample_params):
        first = await sample_connector.connect(sample_params)
        second = await sample_connector.connect(sample_params)
        assert second.success
        assert second.connection_id == first.connection_id
        assert second.connection_info["message"] == "Already connected"

    @pytest.mark.asyncio
    async def test_invalid_parameters_fail_without_error_state(self, sample_connector):
        result = await sample_connector.connect({"server": "sample.local"})
        assert not result.success
        assert result.error_message == "Invalid connection parameters"
        assert sample_connector.connection_state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_backend_failure_moves_to_error(self, sample_dataset, sample_params):
        listener = RecordingListener()
        connector = SampleConnector(listener=listener, dataset=sample_dataset)
        result = await connector.connect(dict(sample_params, apiKey="invalid"))
        assert not result.success
        assert "API key was rejected" in result.error_message
        assert connector.connection_state is ConnectionState.ERROR
        assert listener.errors[0][0] == "connect"

        # a fresh attempt recovers from ERROR
        assert (await connector.connect(sample_params)).success

    @pytest.mark.asyncio
    async def test_timeout(self):
        connector = SlowConnector()
        result = await connector.connect({"connectionTimeout": "0"})
        assert not result.success
        assert result.is_timeout
        assert connector.connection_state is ConnectionState.ERROR

    @pytest.mark.asyncio
    async def test_cancelled_before_connect(self, sample_connector, sample_params):
        cancel = asyncio.Event()
        cancel.set()
        result = await sample_connector.connect(sample_params, cancel_event=cancel)
        assert result.is_cancelled
        assert sample_connector.connection_state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, sample_dataset, sample_params):
        listener = RecordingListener()
        connector = SampleConnector(listener=listener, dataset=sample_dataset)
        assert await connector.disconnect() is True
        assert await connector.disconnect() is True
        assert listener.transitions == []

        await connector.connect(sample_params)
        assert await connector.disconnect() is True
        recorded = len(listener.transitions)
        assert await connector.disconnect() is True
        assert len(listener.transitions) == recorded
        assert connector.connection_state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_session(self, sample_connector, sample_params):
        results = await asyncio.gather(*(sample_connector.connect(sample_params) for _ in range(5)))
        assert all(r.success for r in results)
        assert len({r.connection_id for r in results}) == 1

    @pytest.mark.asyncio
    async def test_test_connection_leaves_instance_untouched(self, sample_connector, sample_params):
        result = await sample_connector.test_connection(sample_params)
        assert result.success
        assert sample_connector.connection_state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_operations_require_connection(self, sample_connector):
        with pytest.raises(ConnectorStateError):
            await sample_connector.extract_data(ExtractionParameters())
        with pytest.raises(ConnectorStateError):
            await sample_connector.discover_data_structures()

    @pytest.mark.asyncio
    async def test_dispose(self, sample_connector, sample_params):
        async with sample_connector as connector:
            await connector.connect(sample_params)
        assert sample_connector.is_disposed
        assert sample_connector.connection_state is ConnectionState.DISCONNECTED
        with pytest.raises(ConnectorDisposedError):
            await sample_connector.connect(sample_params)


class TestDeadline:
    """run_with_deadline keeps timeout and cancellation apart"""

    @pytest.mark.asyncio
    async def test_result_passes_through(self):
        async def work():
            return 7
        assert await run_with_deadline(work(), 1) == 7

    @pytest.mark.asyncio
    async def test_cancel_event(self):
        cancel = asyncio.Event()

        async def work():
            cancel.set()
            await asyncio.sleep(10)

        with pytest.raises(OperationCancelledError):
            await run_with_deadline(work(), 5, cancel)

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(asyncio.TimeoutError):
            await run_with_deadline(asyncio.sleep(10), 0.01)


class TestMasking:
    """Secrets never reach log output"""

    def test_secret_parameters_are_masked(self, sample_params):
        masked = SampleConnector.mask_parameters(dict(sample_params, db_password="pw"))
        assert masked["apiKey"] == "****"
        assert masked["db_password"] == "****"
        assert masked["server"] == "sample.local"
