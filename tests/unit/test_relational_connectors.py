"""
Tests for the relational connectors against a scripted driver session
"""

import pytest
from decimal import Decimal
from typing import Any, Dict, List, Sequence

from connectors.base import ConnectionState
from connectors.incremental import OffsetToken
from connectors.mssql import SqlServerConnector, error_number, map_sqlserver_type
from connectors.mysql import MySqlConnector, map_mysql_type, ssl_options
from connectors.postgres import PostgreSqlConnector, map_postgres_type
from connectors.relational import DriverSession
from schemas.extraction import ExtractionParameters


def column(table, name, data_type, nullable="YES"):
    return {
        "table_name": table,
        "column_name": name,
        "data_type": data_type,
        "is_nullable": nullable,
        "max_length": None,
    }


ORDERS_COLUMNS = [
    column("orders", "id", "integer", "NO"),
    column("orders", "status", "character varying"),
    column("orders", "deleted_at", "timestamp without time zone"),
    column("orders", "updated_at", "integer"),
]
CUSTOMERS_COLUMNS = [
    column("customers", "id", "integer", "NO"),
    column("customers", "name", "text"),
]
PRIMARY_KEYS = [
    {"table_name": "orders", "column_name": "id"},
    {"table_name": "customers", "column_name": "id"},
]


class ScriptedSession(DriverSession):
    """Answers catalog queries from fixtures and records every data query"""

    def __init__(self, schemas: Dict[str, List[Dict[str, Any]]], version: str = "15.4"):
        self.schemas = schemas
        self.version = version
        self.rows: List[Dict[str, Any]] = []
        self.responses: Dict[str, List[Dict[str, Any]]] = {}
        self.error: Exception = None
        self.queries: List[tuple] = []
        self.closed = False

    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        if "information_schema.columns" in sql:
            return list(self.schemas.get(params[0], []))
        if "PRIMARY KEY" in sql:
            return PRIMARY_KEYS if params[0] in self.schemas else []
        self.queries.append((sql, list(params)))
        if self.error is not None:
            raise self.error
        for marker, rows in self.responses.items():
            if marker in sql:
                return [dict(row) for row in rows]
        return [dict(row) for row in self.rows]

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        self.queries.append((sql, list(params)))
        return 0

    async def server_version(self) -> str:
        return self.version

    async def close(self):
        self.closed = True


@pytest.fixture
def session():
    return ScriptedSession({
        "public": ORDERS_COLUMNS + CUSTOMERS_COLUMNS,
        "shop": ORDERS_COLUMNS + CUSTOMERS_COLUMNS,
        "dbo": ORDERS_COLUMNS + CUSTOMERS_COLUMNS,
    })


@pytest.fixture
def session_factory(session):
    async def create(params):
        return session
    return create


@pytest.fixture
def pg_params():
    return {
        "host": "db.local",
        "port": "5432",
        "database": "shop",
        "username": "etl",
        "password": "s3cret",
        "useSsl": "true",
    }


@pytest.fixture
def postgres(session_factory, pg_params):
    async def connect():
        connector = PostgreSqlConnector(session_factory=session_factory)
        result = await connector.connect(pg_params)
        assert result.success, result.error_message
        return connector
    return connect


class TestTypeMaps:
    """Native type names map onto portable names"""

    @pytest.mark.parametrize("native, expected", [
        ("int4", "integer"),
        ("_int4", "array<integer>"),
        ("money", "decimal"),
        ("interval", "timespan"),
        ("timestamp with time zone", "datetime"),
        ("time without time zone", "time"),
        ("jsonb", "json"),
        ("bytea", "binary"),
        ("polygon", "geometry"),
        ("varbit", "bitarray"),
        ("tsvector", "string"),
    ])
    def test_postgres(self, native, expected):
        assert map_postgres_type(native) == expected

    @pytest.mark.parametrize("native, expected", [
        ("year", "integer"),
        ("decimal", "decimal"),
        ("double", "double"),
        ("datetime", "datetime"),
        ("longblob", "binary"),
        ("enum", "string"),
    ])
    def test_mysql(self, native, expected):
        assert map_mysql_type(native) == expected

    @pytest.mark.parametrize("native, expected", [
        ("bigint", "integer"),
        ("smallmoney", "decimal"),
        ("bit", "boolean"),
        ("datetimeoffset", "datetime"),
        ("uniqueidentifier", "uuid"),
        ("rowversion", "binary"),
        ("geography", "geometry"),
        ("xml", "xml"),
        ("nvarchar", "string"),
    ])
    def test_sqlserver(self, native, expected):
        assert map_sqlserver_type(native) == expected


class TestErrorClassification:
    """Driver errors map onto retry categories"""

    class PgError(Exception):
        def __init__(self, sqlstate):
            super().__init__(sqlstate)
            self.sqlstate = sqlstate

    @pytest.mark.parametrize("sqlstate, category", [
        ("08006", "connection"),
        ("42501", "permission"),
        ("28P01", "permission"),
        ("53300", "resource"),
        ("40P01", "resource"),
        ("23505", "constraint"),
        ("42P01", "other"),
    ])
    def test_postgres(self, sqlstate, category):
        assert PostgreSqlConnector().classify_error(self.PgError(sqlstate)) == category

    @pytest.mark.parametrize("code, category", [
        (2003, "connection"),
        (1045, "permission"),
        (1213, "resource"),
        (1062, "constraint"),
        (1146, "other"),
    ])
    def test_mysql(self, code, category):
        assert MySqlConnector().classify_error(Exception(code, "boom")) == category

    def test_sqlserver_reads_nested_error_numbers(self):
        connector = SqlServerConnector()
        assert connector.classify_error(Exception((18456, b"Login failed"),)) == "connection"
        assert connector.classify_error(Exception(2627, "duplicate key")) == "constraint"
        assert connector.classify_error(Exception("no number")) == "other"
        assert error_number(Exception()) is None


class TestValidation:
    """Backend-specific validation rules"""

    def test_postgres_requires_credentials(self):
        result = PostgreSqlConnector().validate_connection({"host": "db.local", "database": "shop"})
        fields = {issue.field_name for issue in result.errors}
        assert {"username", "password"} <= fields

    def test_postgres_warns_without_ssl_setting(self, pg_params):
        params = dict(pg_params)
        del params["useSsl"]
        result = PostgreSqlConnector().validate_connection(params)
        assert result.is_valid
        assert result.warnings == ["SSL setting not specified; an encrypted connection will be required"]

    def test_mysql_ssl_mode(self, pg_params):
        params = dict(pg_params, port="3306")
        assert not MySqlConnector().validate_connection(dict(params, sslMode="bogus")).is_valid
        disabled = MySqlConnector().validate_connection(dict(params, sslMode="none"))
        assert disabled.is_valid
        assert len(disabled.warnings) == 1

    def test_mysql_ssl_options(self):
        assert ssl_options("none") == {"ssl_disabled": True}
        assert ssl_options("verifyfull")["ssl_verify_identity"] is True
        assert ssl_options(None) == {"ssl": {"check_hostname": False}}

    def test_sqlserver_credentials_unless_integrated(self):
        connector = SqlServerConnector()
        result = connector.validate_connection({"host": "sql01", "database": "dw"})
        assert {issue.field_name for issue in result.errors} == {"username", "password"}
        assert connector.validate_connection(
            {"host": "sql01", "database": "dw", "integratedSecurity": "true"}
        ).is_valid

    def test_sqlserver_warns_on_trusted_certificate(self):
        result = SqlServerConnector().validate_connection({
            "host": "sql01", "database": "dw", "username": "sa", "password": "pw",
            "trustServerCertificate": "true",
        })
        assert result.is_valid
        assert result.warnings == ["Server certificate will not be validated"]


class TestPostgresConnector:
    """Discovery and extraction through the shared relational implementation"""

    @pytest.mark.asyncio
    async def test_connect_reports_server(self, postgres):
        connector = await postgres()
        assert connector.connection_state is ConnectionState.CONNECTED
        assert connector.connection_info["server_version"] == "15.4"

    @pytest.mark.asyncio
    async def test_disconnect_closes_session(self, postgres, session):
        connector = await postgres()
        assert await connector.disconnect()
        assert session.closed

    @pytest.mark.asyncio
    async def test_test_connection_uses_injected_session(self, session_factory, pg_params):
        connector = PostgreSqlConnector(session_factory=session_factory)
        result = await connector.test_connection(pg_params)
        assert result.success
        assert connector.connection_state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_discovery(self, postgres):
        connector = await postgres()
        structures = await connector.discover_data_structures()
        assert [s.name for s in structures] == ["customers", "orders"]
        orders = structures[1]
        assert orders.primary_keys == ["id"]
        assert [f.data_type for f in orders.fields] == ["integer", "string", "datetime", "integer"]
        assert orders.fields[0].is_nullable is False
        assert orders.metadata == {"schema": "public"}

    @pytest.mark.asyncio
    async def test_discovery_of_unknown_schema_is_empty(self, postgres):
        connector = await postgres()
        assert await connector.discover_data_structures({"schema": "archive"}) == []

    @pytest.mark.asyncio
    async def test_paged_full_extraction(self, postgres, session):
        connector = await postgres()
        session.rows = [{"id": 1}, {"id": 2}]

        first = await connector.extract_data(ExtractionParameters(target_structures=["orders"], max_records=2))
        assert first.success
        assert first.has_more_records
        assert first.continuation_token == OffsetToken("orders", 2).encode()
        assert session.queries[-1] == ('SELECT * FROM "public"."orders" ORDER BY "id" LIMIT 2', [])

        await connector.extract_data(ExtractionParameters(
            target_structures=["orders"], max_records=2, continuation_token=first.continuation_token
        ))
        assert session.queries[-1][0].endswith("LIMIT 2 OFFSET 2")

    @pytest.mark.asyncio
    async def test_short_page_ends_pagination(self, postgres, session):
        connector = await postgres()
        session.rows = [{"id": 1}]
        result = await connector.extract_data(ExtractionParameters(target_structures=["orders"], max_records=2))
        assert not result.has_more_records
        assert result.continuation_token is None
        assert result.structure_info.name == "orders"

    @pytest.mark.asyncio
    async def test_fields_and_filters(self, postgres, session):
        connector = await postgres()
        await connector.extract_data(ExtractionParameters(
            target_structures=["ORDERS"],
            include_fields=["Status"],
            filter_criteria={"status": "open", "deleted_at": None},
        ))
        sql, params = session.queries[-1]
        assert sql == (
            'SELECT "status" FROM "public"."orders" '
            'WHERE "status" = %s AND "deleted_at" IS NULL ORDER BY "id" LIMIT 1000'
        )
        assert params == ["open"]

    @pytest.mark.asyncio
    async def test_unknown_filter_field_fails(self, postgres):
        connector = await postgres()
        result = await connector.extract_data(ExtractionParameters(
            target_structures=["orders"], filter_criteria={"region": "EU"}
        ))
        assert not result.success
        assert "region" in result.error_message

    @pytest.mark.asyncio
    async def test_unknown_structure(self, postgres):
        connector = await postgres()
        result = await connector.extract_data(ExtractionParameters(target_structures=["public.invoices"]))
        assert not result.success
        assert result.error_message == "Structure 'public.invoices' does not exist"

    @pytest.mark.asyncio
    async def test_multiple_targets_tag_rows(self, postgres, session):
        connector = await postgres()
        session.rows = [{"id": 1}]
        result = await connector.extract_data(ExtractionParameters(target_structures=["customers", "orders"]))
        assert [row["_structure"] for row in result.data] == ["customers", "orders"]
        assert result.continuation_token is None

    @pytest.mark.asyncio
    async def test_query_failure_is_reported(self, postgres, session):
        connector = await postgres()
        session.error = RuntimeError("relation is locked")
        result = await connector.extract_data(ExtractionParameters(target_structures=["orders"]))
        assert not result.success
        assert result.error_message == "Query failed: relation is locked"


class TestRelationalIncremental:
    """Tracking-field predicates and tokens"""

    @pytest.mark.asyncio
    async def test_first_run_has_no_predicate(self, postgres, session):
        connector = await postgres()
        session.rows = [{"id": 1, "updated_at": 5}, {"id": 2, "updated_at": 7}]
        result = await connector.extract_data(ExtractionParameters(
            target_structures=["orders"], incremental=True, tracking_field="updated_at"
        ))
        assert result.continuation_token == "orders|updated_at|7"
        assert session.queries[-1] == (
            'SELECT * FROM "public"."orders" ORDER BY "updated_at" ASC LIMIT 1000', []
        )

    @pytest.mark.asyncio
    async def test_token_adds_predicate(self, postgres, session):
        connector = await postgres()
        result = await connector.extract_data(ExtractionParameters(
            target_structures=["orders"],
            incremental=True,
            tracking_field="updated_at",
            include_fields=["status"],
            continuation_token="orders|updated_at|7",
        ))
        sql, params = session.queries[-1]
        assert sql == (
            'SELECT "status", "updated_at" FROM "public"."orders" '
            'WHERE "updated_at" > %s ORDER BY "updated_at" ASC LIMIT 1000'
        )
        assert params == ["7"]
        # nothing new: the position is handed back unchanged
        assert result.continuation_token == "orders|updated_at|7"

    @pytest.mark.asyncio
    async def test_numeric_tracking_values_are_exact(self, postgres, session):
        connector = await postgres()
        session.rows = [{"id": Decimal("12345678901234567"), "amount": Decimal("1234567890.1234567")}]
        result = await connector.extract_data(ExtractionParameters(
            target_structures=["orders"], incremental=True, tracking_field="id"
        ))
        assert result.data == [{"id": 12345678901234567, "amount": "1234567890.1234567"}]
        assert result.continuation_token == "orders|id|12345678901234567"

    @pytest.mark.asyncio
    async def test_capped_page_keeps_tied_rows_together(self, postgres, session):
        connector = await postgres()
        session.rows = [{"id": 1, "updated_at": 5}, {"id": 2, "updated_at": 7}]
        session.responses['"updated_at" = %s'] = [{"id": 2, "updated_at": 7}, {"id": 3, "updated_at": 7}]
        result = await connector.extract_data(ExtractionParameters(
            target_structures=["orders"], incremental=True, tracking_field="updated_at", max_records=2
        ))

        assert [row["id"] for row in result.data] == [1, 2, 3]
        assert result.has_more_records
        assert result.continuation_token == "orders|updated_at|7"
        assert session.queries[-1] == ('SELECT * FROM "public"."orders" WHERE "updated_at" = %s', [7])

    @pytest.mark.asyncio
    async def test_short_page_needs_no_tie_query(self, postgres, session):
        connector = await postgres()
        session.rows = [{"id": 1, "updated_at": 7}]
        await connector.extract_data(ExtractionParameters(
            target_structures=["orders"], incremental=True, tracking_field="updated_at", max_records=2
        ))
        assert len([sql for sql, _ in session.queries if "= %s" in sql]) == 0

    @pytest.mark.asyncio
    async def test_changes_from_seeds_position(self, postgres, session):
        connector = await postgres()
        await connector.extract_data(ExtractionParameters(
            target_structures=["orders"], incremental=True, tracking_field="id", changes_from="100"
        ))
        assert session.queries[-1][1] == ["100"]

    @pytest.mark.asyncio
    async def test_requires_tracking_field(self, postgres):
        connector = await postgres()
        result = await connector.extract_data(ExtractionParameters(target_structures=["orders"], incremental=True))
        assert not result.success
        assert "requires a tracking field" in result.error_message

    @pytest.mark.asyncio
    async def test_unknown_tracking_field(self, postgres):
        connector = await postgres()
        result = await connector.extract_data(ExtractionParameters(
            target_structures=["orders"], incremental=True, tracking_field="modified"
        ))
        assert result.error_message == "Tracking field 'modified' does not exist on orders"


class TestMySqlConnector:
    """Backtick quoting and database-as-schema"""

    @pytest.mark.asyncio
    async def test_extraction_sql(self, session_factory, session, pg_params):
        connector = MySqlConnector(session_factory=session_factory)
        assert (await connector.connect(dict(pg_params, port="3306"))).success
        await connector.extract_data(ExtractionParameters(target_structures=["orders"]))
        assert session.queries[-1][0] == "SELECT * FROM `shop`.`orders` ORDER BY `id` LIMIT 1000"


@pytest.fixture
def mssql(session_factory):
    async def connect():
        connector = SqlServerConnector(session_factory=session_factory)
        result = await connector.connect({"host": "sql01", "database": "dw", "username": "sa", "password": "pw"})
        assert result.success, result.error_message
        return connector
    return connect


class TestSqlServerConnector:
    """SQL Server dialect and change tracking"""

    @pytest.mark.asyncio
    async def test_version_keeps_first_line(self, mssql, session):
        session.version = "Microsoft SQL Server 2019 (RTM)\n\tCopyright (C) 2019 Microsoft Corporation"
        connector = await mssql()
        assert connector.connection_info["server_version"] == "Microsoft SQL Server 2019 (RTM)"

    @pytest.mark.asyncio
    async def test_offset_fetch_pagination(self, mssql, session):
        connector = await mssql()
        session.rows = [{"id": 1}]
        await connector.extract_data(ExtractionParameters(
            target_structures=["orders"], max_records=5,
            continuation_token=OffsetToken("orders", 10).encode(),
        ))
        assert session.queries[-1][0] == (
            "SELECT * FROM [dbo].[orders] ORDER BY [id] OFFSET 10 ROWS FETCH NEXT 5 ROWS ONLY"
        )

    def test_top_without_ordering(self):
        sql = SqlServerConnector().build_select("[dbo].[log]", [], ["[level] = %s"], [], 50, 0)
        assert sql == "SELECT TOP (50) * FROM [dbo].[log] WHERE [level] = %s"

    @pytest.mark.asyncio
    async def test_tracking_field_uses_shared_incremental(self, mssql, session):
        connector = await mssql()
        await connector.extract_data(ExtractionParameters(
            target_structures=["orders"], incremental=True, tracking_field="updated_at",
            continuation_token="orders|updated_at|3",
        ))
        assert "[updated_at] > %s" in session.queries[-1][0]

    @pytest.mark.asyncio
    async def test_change_tracking_baseline(self, mssql, session):
        connector = await mssql()
        session.responses["TableHasChangeTracking"] = [{"enabled": 1, "current_version": 12, "min_version": 3}]
        session.rows = [{"id": 1}, {"id": 2}]

        result = await connector.extract_data(ExtractionParameters(target_structures=["orders"], incremental=True))
        assert result.success
        assert result.record_count == 2
        assert result.continuation_token == "orders|SYS_CHANGE_VERSION|12"
        assert session.queries[-1][0] == "SELECT * FROM [dbo].[orders] ORDER BY [id]"

    @pytest.mark.asyncio
    async def test_change_tracking_delta(self, mssql, session):
        connector = await mssql()
        session.responses["TableHasChangeTracking"] = [{"enabled": 1, "current_version": 20, "min_version": 3}]
        session.responses["CHANGETABLE"] = [
            {"id": 4, "status": "open", "SYS_CHANGE_VERSION": 15, "SYS_CHANGE_OPERATION": "U"},
        ]

        result = await connector.extract_data(ExtractionParameters(
            target_structures=["orders"], incremental=True,
            continuation_token="orders|SYS_CHANGE_VERSION|12",
        ))
        assert result.data[0]["SYS_CHANGE_OPERATION"] == "U"
        assert result.continuation_token == "orders|SYS_CHANGE_VERSION|20"
        sql, params = session.queries[-1]
        assert "CHANGETABLE(CHANGES [dbo].[orders], %s) AS CT" in sql
        assert "LEFT OUTER JOIN [dbo].[orders] AS t ON t.[id] = CT.[id]" in sql
        assert params == [12, 20]

    @pytest.mark.asyncio
    async def test_cleaned_up_version_requires_full_reload(self, mssql, session):
        connector = await mssql()
        session.responses["TableHasChangeTracking"] = [{"enabled": 1, "current_version": 50, "min_version": 30}]
        result = await connector.extract_data(ExtractionParameters(
            target_structures=["orders"], incremental=True,
            continuation_token="orders|SYS_CHANGE_VERSION|12",
        ))
        assert not result.success
        assert result.requires_full_reload
        assert "Full reload is required" in result.error_message

    @pytest.mark.asyncio
    async def test_change_tracking_disabled(self, mssql, session):
        connector = await mssql()
        session.responses["TableHasChangeTracking"] = [{"enabled": 0, "current_version": None, "min_version": None}]
        result = await connector.extract_data(ExtractionParameters(target_structures=["orders"], incremental=True))
        assert not result.success
        assert "not enabled" in result.error_message

    @pytest.mark.asyncio
    async def test_foreign_token_is_rejected(self, mssql, session):
        connector = await mssql()
        session.responses["TableHasChangeTracking"] = [{"enabled": 1, "current_version": 5, "min_version": 0}]
        result = await connector.extract_data(ExtractionParameters(
            target_structures=["orders"], incremental=True, continuation_token="orders|id|5",
        ))
        assert not result.success
        assert "change tracking" in result.error_message
