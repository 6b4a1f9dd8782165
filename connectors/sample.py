"""
Synthetic in-memory connector used for demos and tests.

Exposes two structures, `customers` and `orders`, both keyed and tracked by
an integer `id`. Rows are generated on connect from `recordCount` unless a
SampleDataset is injected, and more rows can be appended while connected to
exercise incremental round-trips.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import asyncio
import logging

from core.exceptions import AuthenticationError, IncrementalSyncError
from connectors.base import DataSourceConnector, OperationContext, get_bool_param, get_int_param, get_param
from connectors.incremental import OffsetToken, TrackingState, token_matches
from schemas.connector import ConnectionParameter, ConnectorCapabilities, ConnectorMetadata, ValidationResult
from schemas.extraction import DataStructureInfo, ExtractionParameters, ExtractionResult, FieldInfo
from schemas.values import Value, to_transport

logger = logging.getLogger(__name__)

BASE_DATE = datetime(2024, 1, 1, tzinfo=timezone.utc)
COUNTRIES = ["US", "DE", "IN", "GB"]
ORDER_STATUSES = ["pending", "shipped", "delivered"]

STRUCTURES = {
    "customers": DataStructureInfo(
        name="customers",
        type="table",
        description="Synthetic customers",
        fields=[
            FieldInfo("id", "integer", is_nullable=False, description="Primary key", is_primary_key=True),
            FieldInfo("name", "string", description="Customer name"),
            FieldInfo("email", "string", description="Email address"),
            FieldInfo("country", "string", description="Country code"),
            FieldInfo("created_at", "datetime", description="Creation time"),
        ],
    ),
    "orders": DataStructureInfo(
        name="orders",
        type="table",
        description="Synthetic orders",
        fields=[
            FieldInfo("id", "integer", is_nullable=False, description="Primary key", is_primary_key=True),
            FieldInfo("customer_id", "integer", is_nullable=False, description="Customer reference"),
            FieldInfo("amount", "double", description="Order amount"),
            FieldInfo("status", "string", description="Order status"),
            FieldInfo("ordered_at", "datetime", description="Order time"),
        ],
    ),
}


def make_customer(i: int) -> Dict[str, Any]:
    return {
        "id": i,
        "name": f"Customer {i}",
        "email": f"customer{i}@example.com",
        "country": COUNTRIES[(i - 1) % len(COUNTRIES)],
        "created_at": BASE_DATE + timedelta(days=i),
    }


def make_order(i: int, customer_count: int) -> Dict[str, Any]:
    return {
        "id": i,
        "customer_id": ((i - 1) % max(customer_count, 1)) + 1,
        "amount": round(i * 10.5, 2),
        "status": ORDER_STATUSES[(i - 1) % len(ORDER_STATUSES)],
        "ordered_at": BASE_DATE + timedelta(hours=i),
    }


class SampleDataset:
    """Rows backing a sample connector, shareable between instances"""

    def __init__(self, record_count: int = 100):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            "customers": [make_customer(i) for i in range(1, record_count + 1)],
            "orders": [make_order(i, record_count) for i in range(1, record_count + 1)],
        }

    def rows(self, structure: str) -> List[Dict[str, Any]]:
        return self.tables[structure]

    def append(self, structure: str, count: int = 1) -> List[Dict[str, Any]]:
        """Append generated rows with ids after the current maximum"""
        table = self.tables[structure]
        start = max((row["id"] for row in table), default=0) + 1
        customer_count = len(self.tables["customers"])
        new_rows = [
            make_customer(i) if structure == "customers" else make_order(i, customer_count)
            for i in range(start, start + count)
        ]
        table.extend(new_rows)
        return new_rows


class SampleConnector(DataSourceConnector):
    """Sample connector for demonstration purposes"""

    CONNECTION_ID_PREFIX = "sample"
    REJECTED_API_KEY = "invalid"

    def __init__(self, listener=None, transformation_engine=None, dataset: Optional[SampleDataset] = None):
        super().__init__(listener=listener, transformation_engine=transformation_engine)
        self._injected_dataset = dataset
        self.dataset: Optional[SampleDataset] = dataset

    @classmethod
    def describe_metadata(cls) -> ConnectorMetadata:
        return ConnectorMetadata(
            id="sample-connector",
            name="Sample Connector",
            source_type="Sample",
            version="1.0.0",
            description="A sample connector for demonstration purposes.",
            author="Ingestion Team",
            categories=["Sample", "Demo"],
            capabilities=ConnectorCapabilities(
                supports_incremental=True,
                supports_schema_discovery=True,
                supports_advanced_filtering=True,
                supports_preview=True,
                max_concurrent_extractions=5,
                supported_authentications=["apikey"],
                supported_source_types=["sample"],
            ),
        )

    @classmethod
    def describe_parameters(cls) -> List[ConnectionParameter]:
        return [
            ConnectionParameter(
                "server", "Server Address", "The address of the sample server",
                is_required=True, validation_pattern=r"^[a-zA-Z0-9_.-]+$", order=1,
            ),
            ConnectionParameter(
                "port", "Port", "The port to connect on",
                type="integer", default_value="1234", min_value=1, max_value=65535, order=2,
            ),
            ConnectionParameter(
                "apiKey", "API Key", "Authentication key for the server",
                type="password", is_required=True, is_secret=True, group="Authentication", order=3,
            ),
            ConnectionParameter(
                "useTls", "Use TLS/SSL", "Whether to use TLS/SSL for connections",
                type="boolean", default_value="true", group="Security", order=4,
            ),
            ConnectionParameter(
                "recordCount", "Record Count", "Rows generated per structure",
                type="integer", default_value="100", min_value=0, max_value=100000, group="Data", order=5,
            ),
        ]

    def _create_probe(self) -> "SampleConnector":
        return SampleConnector(dataset=self._injected_dataset)

    def _validate_specific(self, params: Dict[str, Any], result: ValidationResult):
        if not get_bool_param(params, "useTls", True):
            result.add_warning("TLS is disabled; traffic to the sample server is unencrypted")

    async def _open_connection(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if get_param(params, "apiKey") == self.REJECTED_API_KEY:
            raise AuthenticationError("API key was rejected", context={"server": get_param(params, "server")})
        await asyncio.sleep(0)
        if self.dataset is None:
            self.dataset = SampleDataset(get_int_param(params, "recordCount", 100))
        return {
            "server_version": "sample-1.0",
            "server": get_param(params, "server"),
            "port": get_int_param(params, "port", 1234),
            "tls": get_bool_param(params, "useTls", True),
        }

    async def _close_connection(self):
        if self._injected_dataset is None:
            self.dataset = None

    def append_rows(self, structure: str, count: int = 1) -> List[Dict[str, Any]]:
        self._require_connected("append rows")
        return self.dataset.append(structure, count)

    async def _discover(self, filter: Dict[str, Any]) -> List[DataStructureInfo]:
        name_filter = str(filter.get("name", "")).lower()
        structures = []
        for name, info in STRUCTURES.items():
            if name_filter and name_filter not in name:
                continue
            structures.append(DataStructureInfo(
                name=info.name,
                type=info.type,
                fields=list(info.fields),
                description=info.description,
                record_count=len(self.dataset.rows(name)),
            ))
        return structures

    def _targets(self, params: ExtractionParameters) -> List[str]:
        if params.wants_all_structures:
            return list(STRUCTURES)
        targets = []
        for target in params.target_structures:
            name = target.lower()
            if name not in STRUCTURES:
                raise IncrementalSyncError(f"Unknown structure '{target}'", context={"target": target})
            targets.append(name)
        return targets

    async def _extract(self, params: ExtractionParameters, context: OperationContext) -> ExtractionResult:
        targets = self._targets(params)
        limit = params.max_records or params.batch_size

        if params.incremental:
            if len(targets) != 1:
                raise IncrementalSyncError(
                    "Incremental extraction needs exactly one target structure",
                    context={"targets": targets}
                )
            return await self._extract_incremental(targets[0], params, limit, context)

        rows: List[Dict[str, Any]] = []
        offset = 0
        if len(targets) == 1 and token_matches(params.continuation_token, targets[0]):
            offset = OffsetToken.decode(params.continuation_token).offset

        for target in targets:
            matched = [row for row in self.dataset.rows(target) if self._matches(row, params.filter_criteria)]
            for row in matched[offset:]:
                if len(rows) >= limit:
                    break
                await self._step(context, len(matched))
                rows.append(self._project(row, params, target if len(targets) > 1 else None))

        has_more = len(rows) == limit
        token = OffsetToken(targets[0], offset + len(rows)).encode() if len(targets) == 1 and has_more else None
        structure = STRUCTURES[targets[0]] if len(targets) == 1 else None
        return ExtractionResult.ok(rows, structure_info=structure, has_more_records=has_more, continuation_token=token)

    async def _extract_incremental(
        self,
        target: str,
        params: ExtractionParameters,
        limit: int,
        context: OperationContext
    ) -> ExtractionResult:
        structure = STRUCTURES[target]
        tracking_field = structure.resolve_field(params.tracking_field or "id")
        if tracking_field is None:
            raise IncrementalSyncError(
                f"Tracking field '{params.tracking_field}' does not exist on {target}",
                context={"target": target, "tracking_field": params.tracking_field}
            )

        state = TrackingState.from_token(params.continuation_token, target, tracking_field, params.changes_from)
        candidates = [
            row for row in self.dataset.rows(target)
            if state.is_new(row.get(tracking_field)) and self._matches(row, params.filter_criteria)
        ]
        candidates.sort(key=lambda row: Value.of(row.get(tracking_field)).as_number() or 0)

        rows = []
        for row in candidates[:limit]:
            await self._step(context, len(candidates))
            state.observe(row)
            rows.append(self._project(row, params, None))

        has_more = len(candidates) > len(rows)
        logger.info(f"{self.id}: {len(rows)} new rows from {target} after {state.last_value!r}")
        return ExtractionResult.ok(
            rows,
            structure_info=structure,
            has_more_records=has_more,
            continuation_token=state.token() or params.continuation_token,
        )

    async def _step(self, context: OperationContext, total: int):
        context.check_cancelled()
        context.advance(1, total, "Extracting sample rows")
        if context.rows_seen % context.interval == 0:
            await asyncio.sleep(0)

    @staticmethod
    def _matches(row: Dict[str, Any], criteria: Dict[str, Any]) -> bool:
        return all(
            field in row and Value.of(row[field]).equals(Value.of(expected))
            for field, expected in (criteria or {}).items()
        )

    @staticmethod
    def _project(row: Dict[str, Any], params: ExtractionParameters, structure: Optional[str]) -> Dict[str, Any]:
        fields = params.include_fields or list(row)
        projected = {field: to_transport(row[field]) for field in fields if field in row}
        if structure is not None:
            projected["_structure"] = structure
        return projected
