"""
PostgreSQL connector using psycopg 3's native async connection
"""

from typing import Any, Dict, List, Sequence
import logging

from core.exceptions import AuthenticationError, ConnectorError
from connectors.base import get_bool_param, get_int_param, get_param
from connectors.relational import HOST_PATTERN, DriverSession, RelationalConnector, Row
from schemas.connector import ConnectionParameter, ConnectorCapabilities, ConnectorMetadata

try:  # pragma: no cover - optional dependency
    import psycopg
    from psycopg.rows import dict_row
except ImportError:  # pragma: no cover - optional dependency
    psycopg = None
    dict_row = None

logger = logging.getLogger(__name__)


class PsycopgSession(DriverSession):
    def __init__(self, connection):
        self._connection = connection

    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        async with self._connection.cursor(row_factory=dict_row) as cursor:
            await cursor.execute(sql, list(params) or None)
            if cursor.description is None:
                return []
            return await cursor.fetchall()

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        async with self._connection.cursor() as cursor:
            await cursor.execute(sql, list(params) or None)
            return cursor.rowcount

    async def server_version(self) -> str:
        number = self._connection.info.server_version
        major, minor = divmod(number, 10000)
        return f"{major}.{minor}"

    async def close(self):
        await self._connection.close()


def map_postgres_type(native_type: str) -> str:
    """Map a PostgreSQL data type name to a portable type name"""
    name = (native_type or "").strip().lower()
    if name.startswith("_"):
        return f"array<{map_postgres_type(name[1:])}>"
    if name == "array":
        return "array<string>"
    if name in ("smallint", "integer", "bigint", "int2", "int4", "int8", "serial", "bigserial", "smallserial"):
        return "integer"
    if name in ("numeric", "decimal", "real", "double precision", "float4", "float8"):
        return "double"
    if name == "money":
        return "decimal"
    if name in ("boolean", "bool"):
        return "boolean"
    if name == "date":
        return "date"
    if name.startswith("time") and not name.startswith("timestamp"):
        return "time"
    if name.startswith("timestamp"):
        return "datetime"
    if name == "interval":
        return "timespan"
    if name == "uuid":
        return "uuid"
    if name in ("json", "jsonb"):
        return "json"
    if name in ("text", "char", "character", "varchar", "character varying", "bpchar", "name", "citext"):
        return "string"
    if name == "bytea":
        return "binary"
    if name in ("point", "line", "lseg", "box", "path", "polygon", "circle"):
        return "geometry"
    if name in ("bit", "bit varying", "varbit"):
        return "bitarray"
    return "string"


class PostgreSqlConnector(RelationalConnector):
    """Connector for PostgreSQL databases"""

    CONNECTION_ID_PREFIX = "pg"
    DEFAULT_PORT = 5432
    DEFAULT_SCHEMA = "public"

    @classmethod
    def describe_metadata(cls) -> ConnectorMetadata:
        return ConnectorMetadata(
            id="postgresql-connector",
            name="PostgreSQL Connector",
            source_type="PostgreSQL",
            version="1.0.0",
            description="Connector for PostgreSQL databases",
            author="Ingestion Team",
            categories=["Database", "Relational"],
            capabilities=ConnectorCapabilities(
                supports_incremental=True,
                supports_advanced_filtering=True,
                supports_schema_discovery=True,
                supports_preview=True,
                max_concurrent_extractions=5,
                supported_authentications=["basic"],
                supported_source_types=["postgresql", "postgres"],
            ),
        )

    @classmethod
    def describe_parameters(cls) -> List[ConnectionParameter]:
        return [
            ConnectionParameter(
                "host", "Host", "Server host name or IP address",
                is_required=True, validation_pattern=HOST_PATTERN, order=1,
            ),
            ConnectionParameter(
                "port", "Port", "Server port",
                type="integer", default_value="5432", min_value=1, max_value=65535, order=2,
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
                "schema", "Schema", "Default schema", default_value="public", group="Advanced", order=6,
            ),
            ConnectionParameter(
                "useSsl", "Use SSL", "Require an encrypted connection",
                type="boolean", default_value="true", group="Security", order=7,
            ),
            ConnectionParameter(
                "connectionTimeout", "Connection Timeout", "Seconds to wait for a connection",
                type="integer", default_value="30", min_value=1, max_value=600, group="Advanced", order=8,
            ),
            ConnectionParameter(
                "commandTimeout", "Command Timeout", "Seconds to wait for a query",
                type="integer", default_value="30", min_value=1, max_value=3600, group="Advanced", order=9,
            ),
            ConnectionParameter(
                "maxPoolSize", "Max Pool Size", "Maximum pooled connections",
                type="integer", default_value="100", min_value=1, max_value=1000, group="Advanced", order=10,
            ),
        ]

    def map_type(self, native_type: str) -> str:
        return map_postgres_type(native_type)

    async def _create_session(self, params: Dict[str, Any]) -> DriverSession:
        if psycopg is None:
            raise ConnectorError("Install psycopg to enable PostgreSQL support.")
        try:
            connection = await psycopg.AsyncConnection.connect(
                host=get_param(params, "host"),
                port=get_int_param(params, "port", self.DEFAULT_PORT),
                dbname=get_param(params, "database"),
                user=get_param(params, "username"),
                password=get_param(params, "password"),
                sslmode="require" if get_bool_param(params, "useSsl", True) else "prefer",
                connect_timeout=int(self._connection_timeout(params)),
                autocommit=True,
            )
        except psycopg.OperationalError as e:
            if "authentication" in str(e).lower():
                raise AuthenticationError(
                    "PostgreSQL rejected the credentials",
                    context={"host": get_param(params, "host")},
                    original_exception=e
                )
            raise
        return PsycopgSession(connection)

    def classify_error(self, error: Exception) -> str:
        sqlstate = getattr(error, "sqlstate", None) or ""
        if sqlstate.startswith("08"):
            return "connection"
        if sqlstate.startswith("42501") or sqlstate.startswith("28"):
            return "permission"
        if sqlstate.startswith("53") or sqlstate == "40P01":
            return "resource"
        if sqlstate.startswith("23"):
            return "constraint"
        return "other"
