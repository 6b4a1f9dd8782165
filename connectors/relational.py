"""
Shared implementation for relational database connectors.

Backend drivers are reached through a DriverSession so the SQL building,
pagination and incremental logic here never depend on a specific driver.
Dialects plug in identifier quoting, placeholders, pagination and the type map.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
import asyncio
import logging

from core.exceptions import (
    ExtractionError,
    IncrementalSyncError,
    IngestionException,
    OperationCancelledError,
    QueryExecutionError,
)
from connectors.base import (
    DataSourceConnector,
    OperationContext,
    get_int_param,
    get_param,
    run_with_deadline,
)
from connectors.incremental import OffsetToken, TrackingState, token_matches, trailing_ties
from schemas.connector import ValidationResult
from schemas.extraction import DataStructureInfo, ExtractionParameters, ExtractionResult, FieldInfo
from schemas.values import to_transport

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

HOST_PATTERN = r"^[a-zA-Z0-9_.-]+$"


class DriverSession(ABC):
    """Minimal async surface a backend driver has to provide"""

    @abstractmethod
    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        pass

    @abstractmethod
    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        pass

    @abstractmethod
    async def server_version(self) -> str:
        pass

    @abstractmethod
    async def close(self):
        pass


class ThreadedDriverSession(DriverSession):
    """
    DriverSession over a blocking DB-API connection.

    Every call runs in a worker thread through asyncio.to_thread; calls on one
    session are serialized because DB-API connections are not thread-safe.
    """

    def __init__(self, connection, version_query: str):
        self._connection = connection
        self._version_query = version_query
        self._lock = asyncio.Lock()

    def _fetch_sync(self, sql: str, params: Sequence[Any]) -> List[Row]:
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql, tuple(params) if params else None)
            if cursor.description is None:
                return []
            columns = [column[0] for column in cursor.description]
            return [
                dict(row) if isinstance(row, dict) else dict(zip(columns, row))
                for row in cursor.fetchall()
            ]
        finally:
            cursor.close()

    def _execute_sync(self, sql: str, params: Sequence[Any]) -> int:
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql, tuple(params) if params else None)
            return cursor.rowcount
        finally:
            cursor.close()

    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        async with self._lock:
            return await asyncio.to_thread(self._fetch_sync, sql, params)

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        async with self._lock:
            return await asyncio.to_thread(self._execute_sync, sql, params)

    async def server_version(self) -> str:
        rows = await self.fetch(self._version_query)
        if not rows:
            return "unknown"
        return str(next(iter(rows[0].values())))

    async def close(self):
        async with self._lock:
            await asyncio.to_thread(self._connection.close)


SessionFactory = Callable[[Dict[str, Any]], Awaitable[DriverSession]]


def _lower_keys(row: Row) -> Row:
    return {str(key).lower(): value for key, value in row.items()}


class RelationalConnector(DataSourceConnector):
    """
    Base class for SQL backends.

    Subclasses provide metadata, parameters, the driver session and the type
    map; they may override the dialect hooks below.
    """

    DEFAULT_PORT = 0
    DEFAULT_SCHEMA = "public"
    IDENTIFIER_QUOTES = ('"', '"')

    def __init__(
        self,
        listener=None,
        transformation_engine=None,
        session_factory: Optional[SessionFactory] = None
    ):
        super().__init__(listener=listener, transformation_engine=transformation_engine)
        self._session_factory = session_factory
        self._session: Optional[DriverSession] = None
        self._catalog: Dict[str, Dict[str, DataStructureInfo]] = {}
        self._default_schema = self.DEFAULT_SCHEMA

    def _create_probe(self) -> "RelationalConnector":
        return type(self)(session_factory=self._session_factory)

    # ------------------------------------------------------------------
    # Dialect hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _create_session(self, params: Dict[str, Any]) -> DriverSession:
        """Open a driver session for the given connection parameters"""
        pass

    def map_type(self, native_type: str) -> str:
        return "string"

    def quote_identifier(self, name: str) -> str:
        opening, closing = self.IDENTIFIER_QUOTES
        return f"{opening}{name.replace(closing, closing * 2)}{closing}"

    def placeholder(self) -> str:
        return "%s"

    def default_schema(self, params: Dict[str, Any]) -> str:
        return get_param(params, "schema", self.DEFAULT_SCHEMA)

    def default_max_records(self) -> int:
        return 1000

    def order_columns(self, info: DataStructureInfo) -> List[str]:
        """Stable ordering for pagination: primary key, else the first column"""
        if info.primary_keys:
            return info.primary_keys
        return [info.fields[0].name] if info.fields else []

    def build_select(
        self,
        table_ref: str,
        columns: List[str],
        where: List[str],
        order_by: List[str],
        limit: Optional[int],
        offset: int
    ) -> str:
        sql = f"SELECT {', '.join(columns) if columns else '*'} FROM {table_ref}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        if order_by:
            sql += " ORDER BY " + ", ".join(order_by)
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        if offset:
            sql += f" OFFSET {int(offset)}"
        return sql

    def classify_error(self, error: Exception) -> str:
        """Map a driver error to connection, permission, resource, constraint or other"""
        return "other"

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_specific(self, params: Dict[str, Any], result: ValidationResult):
        if get_param(params, "useSsl") is None:
            result.add_warning("SSL setting not specified; an encrypted connection will be required")

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _open_connection(self, params: Dict[str, Any]) -> Dict[str, Any]:
        factory = self._session_factory or self._create_session
        session = await factory(params)
        try:
            version = await session.server_version()
        except Exception:
            await session.close()
            raise
        self._session = session
        self._catalog = {}
        self._default_schema = self.default_schema(params)
        return {
            "server_version": version,
            "host": get_param(params, "host"),
            "port": get_int_param(params, "port", self.DEFAULT_PORT),
            "database": get_param(params, "database"),
            "schema": self._default_schema,
        }

    async def _close_connection(self):
        session, self._session = self._session, None
        self._catalog = {}
        if session is not None:
            await session.close()

    async def run_query(
        self,
        sql: str,
        params: Sequence[Any] = (),
        cancel_event: Optional[asyncio.Event] = None
    ) -> List[Row]:
        """Run a query under the command timeout, wrapping driver errors"""
        if self._session is None:
            raise QueryExecutionError("No open session", category="connection")
        try:
            return await run_with_deadline(
                self._session.fetch(sql, list(params)),
                self._command_timeout(),
                cancel_event
            )
        except (OperationCancelledError, asyncio.TimeoutError, IngestionException):
            raise
        except Exception as e:
            category = self.classify_error(e)
            raise QueryExecutionError(
                f"Query failed: {e}",
                context={"connector_id": self.id},
                original_exception=e,
                category=category
            )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _load_schema(self, schema: str) -> Dict[str, DataStructureInfo]:
        if schema in self._catalog:
            return self._catalog[schema]

        p = self.placeholder()
        columns = await self.run_query(
            "SELECT c.table_name AS table_name, c.column_name AS column_name, "
            "c.data_type AS data_type, c.is_nullable AS is_nullable, "
            "c.character_maximum_length AS max_length "
            "FROM information_schema.columns c "
            f"WHERE c.table_schema = {p} "
            "ORDER BY c.table_name, c.ordinal_position",
            [schema]
        )
        keys = await self.run_query(
            "SELECT kcu.table_name AS table_name, kcu.column_name AS column_name "
            "FROM information_schema.table_constraints tc "
            "JOIN information_schema.key_column_usage kcu "
            "ON tc.constraint_name = kcu.constraint_name "
            "AND tc.table_schema = kcu.table_schema "
            "AND tc.table_name = kcu.table_name "
            f"WHERE tc.constraint_type = 'PRIMARY KEY' AND tc.table_schema = {p}",
            [schema]
        )
        primary = {(r["table_name"], r["column_name"]) for r in map(_lower_keys, keys)}

        structures: Dict[str, DataStructureInfo] = {}
        for row in map(_lower_keys, columns):
            table = row["table_name"]
            info = structures.get(table)
            if info is None:
                info = DataStructureInfo(name=table, type="table", metadata={"schema": schema})
                structures[table] = info
            native = str(row["data_type"])
            info.fields.append(FieldInfo(
                name=row["column_name"],
                data_type=self.map_type(native),
                is_nullable=str(row.get("is_nullable", "YES")).upper() == "YES",
                is_primary_key=(table, row["column_name"]) in primary,
                max_length=row.get("max_length"),
                native_type=native,
            ))
        self._catalog[schema] = structures
        return structures

    async def _discover(self, filter: Dict[str, Any]) -> List[DataStructureInfo]:
        schema = filter.get("schema") or self._default_schema
        structures = await self._load_schema(schema)
        name_filter = str(filter.get("name", "")).lower()
        return [
            info for name, info in sorted(structures.items())
            if not name_filter or name_filter in name.lower()
        ]

    async def _resolve_structure(self, target: str) -> Tuple[str, DataStructureInfo]:
        schema, _, table = target.rpartition(".")
        schema = schema or self._default_schema
        structures = await self._load_schema(schema)
        for name, info in structures.items():
            if name.lower() == table.lower():
                return schema, info
        raise ExtractionError(
            f"Structure '{target}' does not exist",
            context={"connector_id": self.id, "target": target}
        )

    def _table_ref(self, schema: str, table: str) -> str:
        return f"{self.quote_identifier(schema)}.{self.quote_identifier(table)}"

    def _resolve_fields(self, info: DataStructureInfo, names: List[str], purpose: str) -> List[str]:
        resolved = []
        for name in names:
            actual = info.resolve_field(name)
            if actual is None:
                raise ExtractionError(
                    f"{purpose} field '{name}' does not exist on {info.name}",
                    context={"target": info.name, "field": name}
                )
            resolved.append(actual)
        return resolved

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def _targets(self, params: ExtractionParameters) -> List[str]:
        if params.wants_all_structures:
            return [info.name for info in await self._discover({})]
        return list(params.target_structures)

    async def _extract(self, params: ExtractionParameters, context: OperationContext) -> ExtractionResult:
        targets = await self._targets(params)
        limit = params.max_records or self.default_max_records()
        rows: List[Row] = []
        has_more = False
        token = None
        structure_info = None

        for target in targets:
            context.check_cancelled()
            schema, info = await self._resolve_structure(target)
            if params.incremental:
                batch, more, next_token = await self._extract_incremental(schema, info, target, params, limit, context)
            else:
                batch, more, next_token = await self._extract_page(schema, info, target, params, limit, context)
            has_more = has_more or more
            if len(targets) == 1:
                token = next_token
                structure_info = info
            else:
                for row in batch:
                    row["_structure"] = info.name
            rows.extend(batch)

        return ExtractionResult.ok(
            rows,
            structure_info=structure_info,
            has_more_records=has_more,
            continuation_token=token,
        )

    def _where(self, info: DataStructureInfo, criteria: Dict[str, Any]) -> Tuple[List[str], List[Any]]:
        clauses, values = [], []
        for name, value in (criteria or {}).items():
            field = self._resolve_fields(info, [name], "Filter")[0]
            if value is None:
                clauses.append(f"{self.quote_identifier(field)} IS NULL")
            else:
                clauses.append(f"{self.quote_identifier(field)} = {self.placeholder()}")
                values.append(value)
        return clauses, values

    async def _collect(self, raw_rows: List[Row], context: OperationContext, batch_size: int) -> List[Row]:
        """Convert rows to transport-safe values, polling cancellation per batch"""
        converted = []
        total = len(raw_rows)
        for index, row in enumerate(raw_rows):
            if index % batch_size == 0:
                context.check_cancelled()
                await asyncio.sleep(0)
            converted.append({key: to_transport(value) for key, value in row.items()})
            context.advance(1, total, "Reading rows")
        return converted

    async def _extract_page(
        self,
        schema: str,
        info: DataStructureInfo,
        target: str,
        params: ExtractionParameters,
        limit: int,
        context: OperationContext
    ) -> Tuple[List[Row], bool, Optional[str]]:
        columns = self._resolve_fields(info, params.include_fields, "Included")
        where, values = self._where(info, params.filter_criteria)
        order = self.order_columns(info)

        offset = 0
        if order and token_matches(params.continuation_token, target):
            offset = OffsetToken.decode(params.continuation_token).offset

        sql = self.build_select(
            self._table_ref(schema, info.name),
            [self.quote_identifier(c) for c in columns],
            where,
            [self.quote_identifier(c) for c in order],
            limit,
            offset,
        )
        logger.debug(f"{self.id}: {sql}")
        raw = await self.run_query(sql, values, context.cancel_event)
        rows = await self._collect(raw, context, params.batch_size)

        has_more = len(rows) == limit
        token = OffsetToken(target, offset + len(rows)).encode() if has_more and order else None
        return rows, has_more, token

    async def _extract_incremental(
        self,
        schema: str,
        info: DataStructureInfo,
        target: str,
        params: ExtractionParameters,
        limit: int,
        context: OperationContext
    ) -> Tuple[List[Row], bool, Optional[str]]:
        if not params.tracking_field:
            raise IncrementalSyncError(
                "Incremental extraction requires a tracking field",
                context={"target": target}
            )
        tracking_field = info.resolve_field(params.tracking_field)
        if tracking_field is None:
            raise IncrementalSyncError(
                f"Tracking field '{params.tracking_field}' does not exist on {info.name}",
                context={"target": target, "tracking_field": params.tracking_field}
            )

        state = TrackingState.from_token(params.continuation_token, target, tracking_field, params.changes_from)
        columns = self._resolve_fields(info, params.include_fields, "Included")
        if columns and tracking_field not in columns:
            columns.append(tracking_field)
        where, values = self._where(info, params.filter_criteria)
        if state.has_position:
            where.append(f"{self.quote_identifier(tracking_field)} > {self.placeholder()}")
            values.append(state.last_value)

        sql = self.build_select(
            self._table_ref(schema, info.name),
            [self.quote_identifier(c) for c in columns],
            where,
            [f"{self.quote_identifier(tracking_field)} ASC"],
            limit,
            0,
        )
        logger.debug(f"{self.id}: {sql}")
        raw = await self.run_query(sql, values, context.cancel_event)
        rows = await self._collect(raw, context, params.batch_size)
        has_more = len(rows) == limit
        if has_more:
            rows = await self._complete_ties(schema, info, tracking_field, columns, where, values, rows, params, context)
        state.observe_all(rows)

        return rows, has_more, state.token() or params.continuation_token

    async def _complete_ties(
        self,
        schema: str,
        info: DataStructureInfo,
        tracking_field: str,
        columns: List[str],
        where: List[str],
        values: List[Any],
        rows: List[Row],
        params: ExtractionParameters,
        context: OperationContext
    ) -> List[Row]:
        """Replace the tied tail of a capped page with every row holding that value"""
        tied = trailing_ties(rows, tracking_field)
        if not tied:
            return rows
        sql = self.build_select(
            self._table_ref(schema, info.name),
            [self.quote_identifier(c) for c in columns],
            where + [f"{self.quote_identifier(tracking_field)} = {self.placeholder()}"],
            [],
            None,
            0,
        )
        logger.debug(f"{self.id}: {sql}")
        raw = await self.run_query(sql, values + [rows[-1][tracking_field]], context.cancel_event)
        return rows[:-tied] + await self._collect(raw, context, params.batch_size)
