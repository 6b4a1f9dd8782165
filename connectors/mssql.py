"""
SQL Server connector using pymssql in worker threads.

Besides tracking-field incremental extraction, SQL Server tables with change
tracking enabled can be synced natively: without a tracking field the
connector reads CHANGETABLE(CHANGES ...) from the last synced version and
hands back the current version as the next continuation token.
"""

from typing import Any, Dict, List, Optional, Tuple
import asyncio
import logging

from core.exceptions import (
    AuthenticationError,
    ConnectorError,
    FullReloadRequiredError,
    IncrementalSyncError,
)
from connectors.base import OperationContext, get_bool_param, get_int_param, get_param
from connectors.incremental import ContinuationToken, token_matches
from connectors.relational import DriverSession, RelationalConnector, Row, ThreadedDriverSession
from schemas.connector import (
    ConnectionParameter,
    ConnectorCapabilities,
    ConnectorMetadata,
    ValidationResult,
)
from schemas.extraction import DataStructureInfo, ExtractionParameters

try:  # pragma: no cover - optional dependency
    import pymssql
except ImportError:  # pragma: no cover - optional dependency
    pymssql = None

logger = logging.getLogger(__name__)

CHANGE_VERSION_FIELD = "SYS_CHANGE_VERSION"
CHANGE_OPERATION_FIELD = "SYS_CHANGE_OPERATION"

# SQL Server error numbers
CONNECTION_ERRORS = (18456, -2, 10060, 17)
PERMISSION_ERRORS = (229, 208)
RESOURCE_ERRORS = (1205, 233)
CONSTRAINT_ERRORS = (2627, 547)


def error_number(error: Exception) -> Optional[int]:
    """Error number from a pymssql exception; args are (number, message) or ((number, message),)"""
    if not error.args:
        return None
    first = error.args[0]
    if isinstance(first, tuple) and first:
        first = first[0]
    return first if isinstance(first, int) else None


def map_sqlserver_type(native_type: str) -> str:
    name = (native_type or "").strip().lower()
    if name in ("tinyint", "smallint", "int", "bigint"):
        return "integer"
    if name in ("decimal", "numeric", "money", "smallmoney"):
        return "decimal"
    if name in ("float", "real"):
        return "double"
    if name == "bit":
        return "boolean"
    if name == "date":
        return "date"
    if name == "time":
        return "time"
    if name in ("datetime", "datetime2", "smalldatetime", "datetimeoffset"):
        return "datetime"
    if name == "uniqueidentifier":
        return "uuid"
    if name in ("binary", "varbinary", "image", "timestamp", "rowversion"):
        return "binary"
    if name in ("geometry", "geography"):
        return "geometry"
    if name == "xml":
        return "xml"
    return "string"


class SqlServerConnector(RelationalConnector):
    """Connector for Microsoft SQL Server databases"""

    CONNECTION_ID_PREFIX = "mssql"
    DEFAULT_PORT = 1433
    DEFAULT_SCHEMA = "dbo"
    IDENTIFIER_QUOTES = ("[", "]")

    @classmethod
    def describe_metadata(cls) -> ConnectorMetadata:
        return ConnectorMetadata(
            id="mssql-connector",
            name="SQL Server Connector",
            source_type="MSSQL",
            version="1.0.0",
            description="Connector for Microsoft SQL Server databases",
            author="Ingestion Team",
            categories=["Database", "SQL Server"],
            capabilities=ConnectorCapabilities(
                supports_incremental=True,
                supports_advanced_filtering=True,
                supports_resume=True,
                supports_schema_discovery=True,
                supports_preview=True,
                max_concurrent_extractions=5,
                supported_authentications=["basic", "integrated"],
                supported_source_types=["mssql", "sqlserver"],
            ),
        )

    @classmethod
    def describe_parameters(cls) -> List[ConnectionParameter]:
        return [
            ConnectionParameter(
                "host", "Server", "Database server hostname or instance name",
                is_required=True, validation_pattern=r"^[a-zA-Z0-9_.\\-]+$", order=1,
            ),
            ConnectionParameter(
                "port", "Port", "Database server port",
                type="integer", default_value="1433", min_value=1, max_value=65535, order=2,
            ),
            ConnectionParameter("database", "Database", "Database name", is_required=True, order=3),
            ConnectionParameter("username", "Username", "Database username", group="Authentication", order=4),
            ConnectionParameter(
                "password", "Password", "Database password",
                type="password", is_secret=True, group="Authentication", order=5,
            ),
            ConnectionParameter(
                "trustServerCertificate", "Trust Server Certificate",
                "Trust server certificate without validation",
                type="boolean", default_value="false", group="Security", order=6,
            ),
            ConnectionParameter(
                "integratedSecurity", "Integrated Security", "Use Windows Authentication",
                type="boolean", default_value="false", group="Authentication", order=7,
            ),
            ConnectionParameter(
                "connectionTimeout", "Connection Timeout", "Timeout in seconds for establishing connection",
                type="integer", default_value="30", min_value=1, max_value=600, group="Advanced", order=8,
            ),
            ConnectionParameter(
                "commandTimeout", "Command Timeout", "Timeout in seconds for command execution",
                type="integer", default_value="30", min_value=1, max_value=3600, group="Advanced", order=9,
            ),
        ]

    # ------------------------------------------------------------------
    # Dialect
    # ------------------------------------------------------------------

    def map_type(self, native_type: str) -> str:
        return map_sqlserver_type(native_type)

    def order_columns(self, info: DataStructureInfo) -> List[str]:
        return info.primary_keys

    def build_select(
        self,
        table_ref: str,
        columns: List[str],
        where: List[str],
        order_by: List[str],
        limit: Optional[int],
        offset: int
    ) -> str:
        column_list = ", ".join(columns) if columns else "*"
        where_sql = (" WHERE " + " AND ".join(where)) if where else ""
        if limit is None:
            order_sql = f" ORDER BY {', '.join(order_by)}" if order_by else ""
            return f"SELECT {column_list} FROM {table_ref}{where_sql}{order_sql}"
        if not order_by:
            return f"SELECT TOP ({int(limit)}) {column_list} FROM {table_ref}{where_sql}"
        return (
            f"SELECT {column_list} FROM {table_ref}{where_sql} "
            f"ORDER BY {', '.join(order_by)} "
            f"OFFSET {int(offset)} ROWS FETCH NEXT {int(limit)} ROWS ONLY"
        )

    def classify_error(self, error: Exception) -> str:
        number = error_number(error)
        if number in CONNECTION_ERRORS:
            return "connection"
        if number in PERMISSION_ERRORS:
            return "permission"
        if number in RESOURCE_ERRORS:
            return "resource"
        if number in CONSTRAINT_ERRORS:
            return "constraint"
        return "other"

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _validate_specific(self, params: Dict[str, Any], result: ValidationResult):
        if get_bool_param(params, "integratedSecurity", False):
            return
        if get_param(params, "username") is None:
            result.add_error("username", "Username is required when not using integrated security")
        if get_param(params, "password") is None:
            result.add_error("password", "Password is required when not using integrated security")
        if get_bool_param(params, "trustServerCertificate", False):
            result.add_warning("Server certificate will not be validated")

    def _connect_sync(self, params: Dict[str, Any]):
        timeout = int(self._connection_timeout(params))
        return pymssql.connect(
            server=get_param(params, "host"),
            port=str(get_int_param(params, "port", self.DEFAULT_PORT)),
            user=get_param(params, "username"),
            password=get_param(params, "password"),
            database=get_param(params, "database"),
            login_timeout=timeout,
            timeout=get_int_param(params, "commandTimeout", timeout),
            as_dict=True,
            autocommit=True,
        )

    async def _create_session(self, params: Dict[str, Any]) -> DriverSession:
        if pymssql is None:
            raise ConnectorError("Install pymssql to enable SQL Server support.")
        try:
            connection = await asyncio.to_thread(self._connect_sync, params)
        except pymssql.OperationalError as e:
            if error_number(e) == 18456 or "18456" in str(e):
                raise AuthenticationError(
                    "SQL Server rejected the login",
                    context={"host": get_param(params, "host")},
                    original_exception=e
                )
            raise
        return ThreadedDriverSession(connection, "SELECT @@VERSION AS version")

    async def _open_connection(self, params: Dict[str, Any]) -> Dict[str, Any]:
        info = await super()._open_connection(params)
        # @@VERSION is multi-line; the first line names the product and build
        info["server_version"] = str(info["server_version"]).splitlines()[0].strip()
        return info

    # ------------------------------------------------------------------
    # Change tracking
    # ------------------------------------------------------------------

    async def _extract_incremental(
        self,
        schema: str,
        info: DataStructureInfo,
        target: str,
        params: ExtractionParameters,
        limit: int,
        context: OperationContext
    ) -> Tuple[List[Row], bool, Optional[str]]:
        if params.tracking_field:
            return await super()._extract_incremental(schema, info, target, params, limit, context)
        return await self._extract_changes(schema, info, target, params, context)

    def _last_sync_version(self, params: ExtractionParameters, target: str) -> Optional[int]:
        raw = None
        if token_matches(params.continuation_token, target):
            token = ContinuationToken.decode(params.continuation_token)
            if token.tracking_field != CHANGE_VERSION_FIELD:
                raise IncrementalSyncError(
                    "Continuation token was not produced by change tracking",
                    context={"target": target}
                )
            raw = token.value
        elif params.options.get(CHANGE_VERSION_FIELD) is not None:
            raw = params.options[CHANGE_VERSION_FIELD]
        if raw is None or str(raw).strip() == "":
            return None
        try:
            return int(str(raw).strip())
        except ValueError as e:
            raise IncrementalSyncError(
                f"Invalid change tracking version: {raw}",
                context={"target": target},
                original_exception=e
            )

    async def _extract_changes(
        self,
        schema: str,
        info: DataStructureInfo,
        target: str,
        params: ExtractionParameters,
        context: OperationContext
    ) -> Tuple[List[Row], bool, Optional[str]]:
        keys = info.primary_keys
        if not keys:
            raise IncrementalSyncError(
                f"Cannot track changes on {schema}.{info.name} because it has no primary key",
                context={"target": target}
            )

        qualified = f"{schema}.{info.name}"
        status = await self.run_query(
            "SELECT CASE WHEN OBJECTPROPERTYEX(OBJECT_ID(%s), 'TableHasChangeTracking') = 1 "
            "THEN 1 ELSE 0 END AS enabled, "
            "CHANGE_TRACKING_CURRENT_VERSION() AS current_version, "
            "CHANGE_TRACKING_MIN_VALID_VERSION(OBJECT_ID(%s)) AS min_version",
            [qualified, qualified],
            context.cancel_event
        )
        row = status[0] if status else {}
        if not row.get("enabled"):
            raise IncrementalSyncError(
                f"Change tracking is not enabled for table {qualified}",
                context={"target": target}
            )
        current_version = int(row["current_version"] or 0)
        min_version = row.get("min_version")
        last_version = self._last_sync_version(params, target)
        table_ref = self._table_ref(schema, info.name)
        next_token = ContinuationToken(target, CHANGE_VERSION_FIELD, str(current_version)).encode()

        if last_version is None:
            # First sync: baseline snapshot of the whole table
            order = ", ".join(self.quote_identifier(k) for k in keys)
            raw = await self.run_query(f"SELECT * FROM {table_ref} ORDER BY {order}", [], context.cancel_event)
            rows = await self._collect(raw, context, params.batch_size)
            logger.info(f"{self.id}: baseline of {len(rows)} rows from {qualified} at version {current_version}")
            return rows, False, next_token

        if min_version is not None and last_version < int(min_version):
            raise FullReloadRequiredError(
                f"Change tracking data has been cleaned up for {qualified}. "
                f"Last sync version {last_version} is less than minimum valid version {min_version}. "
                "Full reload is required.",
                context={"target": target, "last_version": last_version, "min_valid_version": min_version}
            )

        selected = [f"CT.{self.quote_identifier(k)} AS {self.quote_identifier(k)}" for k in keys]
        selected += [
            f"t.{self.quote_identifier(f.name)} AS {self.quote_identifier(f.name)}"
            for f in info.fields if f.name not in keys
        ]
        selected += [f"CT.{CHANGE_VERSION_FIELD}", f"CT.{CHANGE_OPERATION_FIELD}"]
        join = " AND ".join(f"t.{self.quote_identifier(k)} = CT.{self.quote_identifier(k)}" for k in keys)
        sql = (
            f"SELECT {', '.join(selected)} "
            f"FROM CHANGETABLE(CHANGES {table_ref}, %s) AS CT "
            f"LEFT OUTER JOIN {table_ref} AS t ON {join} "
            f"WHERE CT.{CHANGE_VERSION_FIELD} <= %s "
            f"ORDER BY CT.{CHANGE_VERSION_FIELD}"
        )
        raw = await self.run_query(sql, [last_version, current_version], context.cancel_event)
        rows = await self._collect(raw, context, params.batch_size)
        logger.info(
            f"{self.id}: {len(rows)} changes from {qualified} "
            f"between versions {last_version} and {current_version}"
        )
        return rows, False, next_token
