"""
Connector contract shared by every source backend.

A connector instance owns exactly one logical connection and moves through

    DISCONNECTED -> CONNECTING -> CONNECTED | ERROR
    CONNECTED    -> DISCONNECTING -> DISCONNECTED | ERROR

ERROR is left only by a fresh connect attempt. Connect and disconnect are
serialized by a per-instance asyncio.Lock; discovery and extraction assume an
already connected instance and do not take the lock.

Operational failures (bad parameters, unreachable host, failed query) are
returned as typed results. Programmer errors (missing arguments, using a
disposed instance, extracting while disconnected) raise immediately.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import enum
import logging
import re
import time
import uuid

from core.config import settings
from core.exceptions import (
    ConnectorDisposedError,
    ConnectorStateError,
    ExtractionError,
    FullReloadRequiredError,
    OperationCancelledError,
)
from core.logging import mask_secrets
from schemas.connector import (
    ConnectionParameter,
    ConnectionResult,
    ConnectorCapabilities,
    ConnectorConfiguration,
    ConnectorMetadata,
    ProgressUpdate,
    ValidationResult,
)
from schemas.extraction import DataStructureInfo, ExtractionParameters, ExtractionResult
from schemas.transformation import TransformationParameters, TransformationResult
from ingestion.transformers.engine import TransformationEngine

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]

TRUE_VALUES = ("true", "1", "yes", "y", "on")
FALSE_VALUES = ("false", "0", "no", "n", "off")
SECRET_HINTS = ("password", "secret", "apikey", "api_key", "token")


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    DISCONNECTING = "Disconnecting"
    ERROR = "Error"


class ConnectorListener:
    """
    Callback interface for connector notifications.

    Subclass and override what you need; the defaults do nothing.
    """

    def on_state_changed(self, connector_id: str, old_state: ConnectionState, new_state: ConnectionState):
        pass

    def on_error(self, connector_id: str, operation: str, message: str, exception: Optional[BaseException] = None):
        pass

    def on_progress(self, connector_id: str, update: ProgressUpdate):
        pass


# ============================================================================
# Parameter helpers
# ============================================================================

def get_param(params: Optional[Dict[str, Any]], name: str, default: Optional[str] = None) -> Optional[str]:
    """Case-insensitive lookup; blank values count as missing."""
    if not params:
        return default
    value = params.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in params.items():
            if key.lower() == lowered:
                value = candidate
                break
    if value is None:
        return default
    text = str(value).strip()
    return text if text else default


def get_int_param(params: Optional[Dict[str, Any]], name: str, default: int) -> int:
    value = get_param(params, name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_bool_param(params: Optional[Dict[str, Any]], name: str, default: bool) -> bool:
    value = get_param(params, name)
    if value is None:
        return default
    return value.lower() in TRUE_VALUES


def has_param(params: Optional[Dict[str, Any]], name: str) -> bool:
    return get_param(params, name) is not None


async def run_with_deadline(
    awaitable: Awaitable,
    timeout: Optional[float],
    cancel_event: Optional[asyncio.Event] = None
):
    """
    Await `awaitable` until it finishes, the timeout elapses, or the caller
    sets `cancel_event`, whichever comes first.

    Raises asyncio.TimeoutError on timeout and OperationCancelledError on
    cancellation, so the two outcomes stay distinguishable.
    """
    task = asyncio.ensure_future(awaitable)
    cancel_waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
    waiters = {task} if cancel_waiter is None else {task, cancel_waiter}
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    if task in done:
        return task.result()
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError("Operation was cancelled")
    raise asyncio.TimeoutError()


class OperationContext:
    """Per-call state for long-running loops: cancellation polling and progress cadence."""

    def __init__(
        self,
        connector: "DataSourceConnector",
        operation: str,
        cancel_event: Optional[asyncio.Event] = None,
        progress: Optional[ProgressCallback] = None,
        interval: Optional[int] = None
    ):
        self.connector = connector
        self.operation = operation
        self.operation_id = f"{operation}-{uuid.uuid4().hex[:12]}"
        self.cancel_event = cancel_event
        self.progress = progress
        self.interval = max(1, interval or settings.EXTRACTION_PROGRESS_INTERVAL)
        self.rows_seen = 0
        self.started = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def check_cancelled(self):
        if self.is_cancelled:
            raise OperationCancelledError(
                f"{self.operation} cancelled",
                context={"operation_id": self.operation_id, "rows_seen": self.rows_seen}
            )

    def advance(self, count: int = 1, total: int = 0, message: str = ""):
        """Count processed rows, firing a progress update each time a cadence boundary is crossed"""
        before = self.rows_seen
        self.rows_seen += count
        if self.rows_seen // self.interval > before // self.interval:
            self.report(total, message)

    def report(self, total: int = 0, message: str = ""):
        update = ProgressUpdate(self.operation_id, self.rows_seen, total, message)
        self.connector._emit_progress(update, self.progress)


# ============================================================================
# Connector contract
# ============================================================================

class DataSourceConnector(ABC):
    """
    Abstract base class for all source connectors.

    Subclasses describe themselves through describe_metadata() and
    describe_parameters(), and implement the backend hooks:
    _open_connection, _close_connection, _discover and _extract.
    """

    CONNECTION_ID_PREFIX = "conn"

    def __init__(
        self,
        listener: Optional[ConnectorListener] = None,
        transformation_engine=None
    ):
        self._listener = listener or ConnectorListener()
        self._transformation_engine = transformation_engine or TransformationEngine()
        self._state = ConnectionState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._configuration: Optional[ConnectorConfiguration] = None
        self._connection_params: Dict[str, str] = {}
        self._connection_id: Optional[str] = None
        self._connection_info: Dict[str, Any] = {}
        self._disposed = False

    # ------------------------------------------------------------------
    # Self-description
    # ------------------------------------------------------------------

    @classmethod
    @abstractmethod
    def describe_metadata(cls) -> ConnectorMetadata:
        """Static identity and capabilities of this connector variant"""
        pass

    @classmethod
    @abstractmethod
    def describe_parameters(cls) -> List[ConnectionParameter]:
        """Connection parameters this connector understands"""
        pass

    @property
    def id(self) -> str:
        return self.describe_metadata().id

    @property
    def name(self) -> str:
        return self.describe_metadata().name

    @property
    def source_type(self) -> str:
        return self.describe_metadata().source_type

    @property
    def version(self) -> str:
        return self.describe_metadata().version

    @property
    def capabilities(self) -> ConnectorCapabilities:
        return self.describe_metadata().capabilities

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def connection_id(self) -> Optional[str]:
        return self._connection_id

    @property
    def connection_info(self) -> Dict[str, Any]:
        return dict(self._connection_info)

    @property
    def configuration(self) -> Optional[ConnectorConfiguration]:
        return self._configuration

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @classmethod
    def secret_parameter_names(cls) -> List[str]:
        return [p.name for p in cls.describe_parameters() if p.is_secret]

    @classmethod
    def mask_parameters(cls, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Copy of `params` that is safe to log"""
        secret_names = set(cls.secret_parameter_names())
        secret_names.update(
            key for key in (params or {})
            if any(hint in key.lower() for hint in SECRET_HINTS)
        )
        return mask_secrets(params or {}, secret_names)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _set_state(self, new_state: ConnectionState):
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        logger.debug(f"{self.id}: {old_state.value} -> {new_state.value}")
        try:
            self._listener.on_state_changed(self.id, old_state, new_state)
        except Exception as e:
            logger.warning(f"{self.id}: state listener failed: {e}")

    def _report_error(self, operation: str, message: str, exception: Optional[BaseException] = None):
        logger.error(f"{self.id}: {operation} failed: {message}")
        try:
            self._listener.on_error(self.id, operation, message, exception)
        except Exception as e:
            logger.warning(f"{self.id}: error listener failed: {e}")

    def _emit_progress(self, update: ProgressUpdate, progress: Optional[ProgressCallback] = None):
        try:
            if progress is not None:
                progress(update)
            self._listener.on_progress(self.id, update)
        except Exception as e:
            logger.warning(f"{self.id}: progress listener failed: {e}")

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _ensure_not_disposed(self):
        if self._disposed:
            raise ConnectorDisposedError(
                f"Connector {self.id} has been disposed",
                context={"connector_id": self.id}
            )

    def _require_connected(self, operation: str):
        self._ensure_not_disposed()
        if self._state is not ConnectionState.CONNECTED:
            raise ConnectorStateError(
                f"Cannot {operation}: connector {self.id} is not connected",
                context={
                    "connector_id": self.id,
                    "state": self._state.value,
                    "required_state": ConnectionState.CONNECTED.value,
                }
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, configuration: ConnectorConfiguration) -> bool:
        """Store configuration and validate its parameters. Never connects."""
        self._ensure_not_disposed()
        if configuration is None:
            raise ValueError("configuration is required")

        self._configuration = configuration
        validation = self.validate_connection(configuration.connection_parameters)
        if not validation.is_valid:
            self._report_error("initialize", "; ".join(validation.error_messages()))
            return False

        for warning in validation.warnings:
            logger.warning(f"{self.id}: {warning}")
        logger.info(
            f"Initialized connector {self.id} "
            f"(tenant={configuration.tenant_id}, params={self.mask_parameters(configuration.connection_parameters)})"
        )
        return True

    def validate_connection(self, params: Dict[str, Any]) -> ValidationResult:
        """
        Check connection parameters without touching state or the network.

        Generic checks come from describe_parameters(); connectors add their
        own through _validate_specific().
        """
        if params is None:
            raise ValueError("params is required")

        result = ValidationResult()
        for parameter in self.describe_parameters():
            value = get_param(params, parameter.name)
            if value is None:
                if parameter.is_required:
                    result.add_error(parameter.name, f"{parameter.display_name} is required")
                continue
            self._validate_value(parameter, value, result)

        self._validate_specific(params, result)
        return result

    @staticmethod
    def _validate_value(parameter: ConnectionParameter, value: str, result: ValidationResult):
        if parameter.type == "integer":
            try:
                number = int(value)
            except ValueError:
                result.add_error(parameter.name, f"{parameter.display_name} must be an integer")
                return
            low, high = parameter.min_value, parameter.max_value
            if (low is not None and number < low) or (high is not None and number > high):
                result.add_error(parameter.name, f"{parameter.display_name} must be between {low} and {high}")
                return
        elif parameter.type == "boolean":
            if value.lower() not in TRUE_VALUES + FALSE_VALUES:
                result.add_error(parameter.name, f"{parameter.display_name} must be true or false")
                return

        if parameter.validation_pattern and not re.fullmatch(parameter.validation_pattern, value):
            result.add_error(parameter.name, f"{parameter.display_name} contains invalid characters")
        if parameter.allowed_values:
            allowed = [v.lower() for v in parameter.allowed_values]
            if value.lower() not in allowed:
                result.add_error(
                    parameter.name,
                    f"{parameter.display_name} must be one of: {', '.join(parameter.allowed_values)}"
                )

    def _validate_specific(self, params: Dict[str, Any], result: ValidationResult):
        """Backend-specific validation hook"""
        pass

    def _connection_timeout(self, params: Dict[str, Any]) -> float:
        return float(get_int_param(params, "connectionTimeout", settings.CONNECTION_TIMEOUT_SECONDS))

    def _command_timeout(self) -> float:
        return float(get_int_param(self._connection_params, "commandTimeout", settings.COMMAND_TIMEOUT_SECONDS))

    def _new_connection_id(self) -> str:
        return f"{self.CONNECTION_ID_PREFIX}-{uuid.uuid4().hex}"

    async def connect(
        self,
        params: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> ConnectionResult:
        """
        Open the backend session.

        Uses the configured parameters when `params` is omitted. Concurrent
        calls on one instance queue on the connection lock.
        """
        self._ensure_not_disposed()
        if params is None:
            if self._configuration is None:
                raise ValueError("params is required when the connector is not initialized")
            params = self._configuration.connection_parameters
        params = dict(params)

        async with self._lock:
            if self._state is ConnectionState.CONNECTED:
                logger.info(f"{self.id}: already connected ({self._connection_id})")
                result = ConnectionResult.ok(
                    self._connection_id,
                    self._connection_info.get("server_version"),
                    dict(self._connection_info),
                )
                result.connection_info["message"] = "Already connected"
                return result

            self._set_state(ConnectionState.CONNECTING)

            validation = self.validate_connection(params)
            if not validation.is_valid:
                self._set_state(ConnectionState.DISCONNECTED)
                message = "Invalid connection parameters"
                self._report_error("connect", f"{message}: {'; '.join(validation.error_messages())}")
                return ConnectionResult.failure(message, validation.error_messages())

            timeout = self._connection_timeout(params)
            logger.info(f"{self.id}: connecting with {self.mask_parameters(params)}")
            try:
                if cancel_event is not None and cancel_event.is_set():
                    raise OperationCancelledError("Connection was cancelled")
                info = await run_with_deadline(self._open_connection(params), timeout, cancel_event)
            except OperationCancelledError:
                self._set_state(ConnectionState.DISCONNECTED)
                logger.info(f"{self.id}: connection cancelled")
                return ConnectionResult.failure("Connection was cancelled", is_cancelled=True)
            except asyncio.TimeoutError:
                self._set_state(ConnectionState.ERROR)
                message = f"Connection timed out after {timeout:g} seconds"
                self._report_error("connect", message)
                return ConnectionResult.failure(message, is_timeout=True)
            except Exception as e:
                self._set_state(ConnectionState.ERROR)
                message = f"Failed to connect: {getattr(e, 'message', None) or e}"
                self._report_error("connect", message, e)
                return ConnectionResult.failure(message)

            self._connection_params = params
            self._connection_id = self._new_connection_id()
            self._connection_info = dict(info or {})
            self._set_state(ConnectionState.CONNECTED)
            logger.info(f"{self.id}: connected ({self._connection_id})")
            return ConnectionResult.ok(
                self._connection_id,
                self._connection_info.get("server_version"),
                dict(self._connection_info),
            )

    async def disconnect(self, cancel_event: Optional[asyncio.Event] = None) -> bool:
        """Close the backend session. Returns True when already disconnected."""
        async with self._lock:
            if self._state is ConnectionState.DISCONNECTED:
                return True

            self._set_state(ConnectionState.DISCONNECTING)
            try:
                await run_with_deadline(self._close_connection(), self._command_timeout(), cancel_event)
            except Exception as e:
                self._set_state(ConnectionState.ERROR)
                self._report_error("disconnect", str(e), e)
                return False
            finally:
                self._connection_id = None
                self._connection_info = {}

            self._set_state(ConnectionState.DISCONNECTED)
            logger.info(f"{self.id}: disconnected")
            return True

    def _create_probe(self) -> "DataSourceConnector":
        """Fresh instance used by test_connection"""
        return type(self)()

    async def test_connection(self, params: Dict[str, Any]) -> ConnectionResult:
        """Connect a throwaway instance and disconnect it straight away"""
        self._ensure_not_disposed()
        probe = self._create_probe()
        try:
            result = await probe.connect(params)
        finally:
            await probe.dispose()
        logger.info(f"{self.id}: connection test {'succeeded' if result.success else 'failed'}")
        return result

    async def dispose(self):
        """Disconnect if needed and make the instance unusable"""
        if self._disposed:
            return
        if self._state is not ConnectionState.DISCONNECTED:
            await self.disconnect()
        self._disposed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.dispose()

    # ------------------------------------------------------------------
    # Discovery, extraction, transformation
    # ------------------------------------------------------------------

    async def discover_data_structures(self, filter: Optional[Dict[str, Any]] = None) -> List[DataStructureInfo]:
        self._require_connected("discover data structures")
        structures = await self._discover(filter or {})
        logger.info(f"{self.id}: discovered {len(structures)} data structures")
        return structures

    async def extract_data(
        self,
        params: ExtractionParameters,
        cancel_event: Optional[asyncio.Event] = None,
        progress: Optional[ProgressCallback] = None
    ) -> ExtractionResult:
        if params is None:
            raise ValueError("params is required")
        self._require_connected("extract data")

        context = OperationContext(self, "extract", cancel_event, progress)
        try:
            context.check_cancelled()
            result = await self._extract(params, context)
        except OperationCancelledError:
            logger.info(f"{self.id}: extraction cancelled after {context.rows_seen} rows")
            return ExtractionResult.cancelled(context.rows_seen, context.elapsed_ms)
        except asyncio.TimeoutError:
            self._report_error("extract", "Extraction timed out")
            return ExtractionResult.timed_out(context.rows_seen, context.elapsed_ms)
        except FullReloadRequiredError as e:
            logger.warning(f"{self.id}: {e.message}")
            return ExtractionResult.full_reload_required(e.message, context.elapsed_ms)
        except ExtractionError as e:
            self._report_error("extract", e.message, e)
            logger.error(f"{self.id}: extraction failed", extra={"error_context": e.to_dict()})
            return ExtractionResult.failure(e.message, str(e), context.elapsed_ms)
        except Exception as e:
            self._report_error("extract", str(e), e)
            return ExtractionResult.failure(f"Extraction failed: {e}", repr(e), context.elapsed_ms)

        result.execution_time_ms = context.elapsed_ms
        logger.info(
            f"{self.id}: extracted {result.record_count} records "
            f"in {result.execution_time_ms:.0f} ms (has_more={result.has_more_records})"
        )
        return result

    async def transform_data(
        self,
        rows: List[Dict[str, Any]],
        params: TransformationParameters,
        cancel_event: Optional[asyncio.Event] = None,
        progress: Optional[ProgressCallback] = None
    ) -> TransformationResult:
        self._ensure_not_disposed()
        def forward(update: ProgressUpdate):
            self._emit_progress(update, progress)

        return await self._transformation_engine.apply(rows, params, cancel_event=cancel_event, progress=forward)

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _open_connection(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Open the backend session and return connection info (server_version, ...)"""
        pass

    @abstractmethod
    async def _close_connection(self):
        pass

    @abstractmethod
    async def _discover(self, filter: Dict[str, Any]) -> List[DataStructureInfo]:
        pass

    @abstractmethod
    async def _extract(self, params: ExtractionParameters, context: OperationContext) -> ExtractionResult:
        pass
