"""
MySQL connector using PyMySQL in worker threads
"""

from typing import Any, Dict, List
import asyncio
import logging

from core.exceptions import AuthenticationError, ConnectorError
from connectors.base import get_int_param, get_param
from connectors.relational import HOST_PATTERN, DriverSession, RelationalConnector, ThreadedDriverSession
from schemas.connector import (
    ConnectionParameter,
    ConnectorCapabilities,
    ConnectorMetadata,
    ValidationResult,
)

try:  # pragma: no cover - optional dependency
    import pymysql
except ImportError:  # pragma: no cover - optional dependency
    pymysql = None

logger = logging.getLogger(__name__)

SSL_MODES = ["none", "preferred", "required", "verifyca", "verifyfull"]

# MySQL server error numbers
ACCESS_DENIED_ERRORS = (1044, 1045, 1142, 1143)
CONNECTION_ERRORS = (2002, 2003, 2006, 2013)
RESOURCE_ERRORS = (1205, 1213, 1040)
CONSTRAINT_ERRORS = (1062, 1451, 1452)


def ssl_options(mode: str) -> Dict[str, Any]:
    """PyMySQL keyword arguments for an sslMode value"""
    mode = (mode or "preferred").lower()
    if mode == "none":
        return {"ssl_disabled": True}
    if mode == "verifyca":
        return {"ssl": {"check_hostname": False}, "ssl_verify_cert": True}
    if mode == "verifyfull":
        return {"ssl": {"check_hostname": True}, "ssl_verify_cert": True, "ssl_verify_identity": True}
    return {"ssl": {"check_hostname": False}}


def map_mysql_type(native_type: str) -> str:
    name = (native_type or "").strip().lower()
    if name in ("tinyint", "smallint", "mediumint", "int", "integer", "bigint", "year"):
        return "integer"
    if name in ("decimal", "numeric"):
        return "decimal"
    if name in ("float", "double", "real"):
        return "double"
    if name in ("bit", "bool", "boolean"):
        return "boolean"
    if name == "date":
        return "date"
    if name == "time":
        return "time"
    if name in ("datetime", "timestamp"):
        return "datetime"
    if name == "json":
        return "json"
    if name in ("binary", "varbinary", "blob", "tinyblob", "mediumblob", "longblob"):
        return "binary"
    if name in ("geometry", "point", "linestring", "polygon"):
        return "geometry"
    return "string"


class MySqlConnector(RelationalConnector):
    """Connector for MySQL databases"""

    CONNECTION_ID_PREFIX = "mysql"
    DEFAULT_PORT = 3306
    IDENTIFIER_QUOTES = ("`", "`")

    @classmethod
    def describe_metadata(cls) -> ConnectorMetadata:
        return ConnectorMetadata(
            id="mysql-connector",
            name="MySQL Connector",
            source_type="MySQL",
            version="1.0.0",
            description="Connector for MySQL databases",
            author="Ingestion Team",
            categories=["Database", "Relational"],
            capabilities=ConnectorCapabilities(
                supports_incremental=True,
                supports_advanced_filtering=True,
                supports_schema_discovery=True,
                supports_preview=True,
                max_concurrent_extractions=5,
                supported_authentications=["basic"],
                supported_source_types=["mysql", "mariadb"],
            ),
        )

    @classmethod
    def describe_parameters(cls) -> List[ConnectionParameter]:
        return [
            ConnectionParameter(
                "host", "Server", "MySQL server host name or IP address",
                is_required=True, validation_pattern=HOST_PATTERN, order=1,
            ),
            ConnectionParameter(
                "port", "Port", "MySQL server port",
                type="integer", default_value="3306", min_value=1, max_value=65535, order=2,
            ),
            ConnectionParameter("database", "Database", "Database name", is_required=True, order=3),
            ConnectionParameter(
                "username", "Username", "Login user", is_required=True, group="Authentication", order=4,
            ),
            ConnectionParameter(
                "password", "Password", "Login password",
                type="password", is_required=True, is_secret=True, group="Authentication", order=5,
            ),
            ConnectionParameter(
                "sslMode", "SSL Mode", "SSL mode for the connection",
                default_value="preferred", allowed_values=SSL_MODES, group="Security", order=6,
            ),
            ConnectionParameter(
                "connectionTimeout", "Connection Timeout", "Seconds to wait for a connection",
                type="integer", default_value="30", min_value=1, max_value=600, group="Advanced", order=7,
            ),
            ConnectionParameter(
                "commandTimeout", "Command Timeout", "Seconds to wait for a query",
                type="integer", default_value="30", min_value=1, max_value=3600, group="Advanced", order=8,
            ),
        ]

    def default_schema(self, params: Dict[str, Any]) -> str:
        # MySQL schemas are databases
        return get_param(params, "database", "")

    def map_type(self, native_type: str) -> str:
        return map_mysql_type(native_type)

    def _validate_specific(self, params: Dict[str, Any], result: ValidationResult):
        if get_param(params, "sslMode", "preferred").lower() == "none":
            result.add_warning("SSL is disabled; credentials and data travel unencrypted")

    def _connect_sync(self, params: Dict[str, Any]):
        timeout = int(self._connection_timeout(params))
        return pymysql.connect(
            host=get_param(params, "host"),
            port=get_int_param(params, "port", self.DEFAULT_PORT),
            user=get_param(params, "username"),
            password=get_param(params, "password") or "",
            database=get_param(params, "database"),
            connect_timeout=timeout,
            read_timeout=int(get_int_param(params, "commandTimeout", timeout)),
            cursorclass=pymysql.cursors.DictCursor,
            autocommit=True,
            **ssl_options(get_param(params, "sslMode", "preferred")),
        )

    async def _create_session(self, params: Dict[str, Any]) -> DriverSession:
        if pymysql is None:
            raise ConnectorError("Install PyMySQL to enable MySQL support.")
        try:
            connection = await asyncio.to_thread(self._connect_sync, params)
        except pymysql.err.OperationalError as e:
            if e.args and e.args[0] in ACCESS_DENIED_ERRORS:
                raise AuthenticationError(
                    "MySQL rejected the credentials",
                    context={"host": get_param(params, "host")},
                    original_exception=e
                )
            raise
        return ThreadedDriverSession(connection, "SELECT VERSION() AS version")

    def classify_error(self, error: Exception) -> str:
        code = error.args[0] if error.args and isinstance(error.args[0], int) else None
        if code in CONNECTION_ERRORS:
            return "connection"
        if code in ACCESS_DENIED_ERRORS:
            return "permission"
        if code in RESOURCE_ERRORS:
            return "resource"
        if code in CONSTRAINT_ERRORS:
            return "constraint"
        return "other"
