"""
Extraction parameters, discovered structures and extraction results
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

ALL_STRUCTURES = "*"


class ExtractionParameters(BaseModel):
    """
    What to extract and how.

    max_records of 0 means "use the connector's default cap". The continuation
    token is opaque to callers: persist it and hand it back verbatim.
    """
    target_structures: List[str] = Field(default_factory=lambda: [ALL_STRUCTURES])
    include_fields: List[str] = Field(default_factory=list)
    filter_criteria: Dict[str, Any] = Field(default_factory=dict)
    max_records: int = Field(0, ge=0)
    batch_size: int = Field(1000, ge=1)
    incremental: bool = False
    tracking_field: Optional[str] = None
    changes_from: Optional[str] = None
    continuation_token: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("target_structures")
    def default_targets(cls, v):
        """Empty target list means every discoverable structure"""
        cleaned = [t.strip() for t in v if t and t.strip()]
        return cleaned or [ALL_STRUCTURES]

    @property
    def wants_all_structures(self) -> bool:
        return ALL_STRUCTURES in self.target_structures


@dataclass(frozen=True)
class FieldInfo:
    name: str
    data_type: str
    is_nullable: bool = True
    description: str = ""
    is_primary_key: bool = False
    max_length: Optional[int] = None
    native_type: Optional[str] = None


@dataclass
class DataStructureInfo:
    name: str
    type: str = "table"
    fields: List[FieldInfo] = field(default_factory=list)
    description: str = ""
    record_count: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def primary_keys(self) -> List[str]:
        return [f.name for f in self.fields if f.is_primary_key]

    def has_field(self, name: str) -> bool:
        return any(f.name.lower() == name.lower() for f in self.fields)

    def resolve_field(self, name: str) -> Optional[str]:
        """Actual field name matching `name` case-insensitively"""
        for f in self.fields:
            if f.name.lower() == name.lower():
                return f.name
        return None


@dataclass
class ExtractionResult:
    success: bool
    data: List[Dict[str, Any]] = field(default_factory=list)
    record_count: int = 0
    execution_time_ms: float = 0.0
    structure_info: Optional[DataStructureInfo] = None
    has_more_records: bool = False
    continuation_token: Optional[str] = None
    error_message: Optional[str] = None
    error_details: Optional[str] = None
    is_cancelled: bool = False
    is_timeout: bool = False
    requires_full_reload: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def ok(
        cls,
        data: List[Dict[str, Any]],
        execution_time_ms: float = 0.0,
        structure_info: Optional[DataStructureInfo] = None,
        has_more_records: bool = False,
        continuation_token: Optional[str] = None
    ) -> "ExtractionResult":
        return cls(
            success=True,
            data=data,
            record_count=len(data),
            execution_time_ms=execution_time_ms,
            structure_info=structure_info,
            has_more_records=has_more_records,
            continuation_token=continuation_token,
        )

    @classmethod
    def failure(
        cls,
        message: str,
        details: Optional[str] = None,
        execution_time_ms: float = 0.0
    ) -> "ExtractionResult":
        return cls(
            success=False,
            error_message=message,
            error_details=details,
            execution_time_ms=execution_time_ms,
        )

    @classmethod
    def cancelled(cls, records_seen: int, execution_time_ms: float = 0.0) -> "ExtractionResult":
        """Partial rows are discarded; only the counter survives."""
        return cls(
            success=False,
            record_count=records_seen,
            execution_time_ms=execution_time_ms,
            error_message="Extraction was cancelled",
            is_cancelled=True,
        )

    @classmethod
    def timed_out(cls, records_seen: int, execution_time_ms: float = 0.0) -> "ExtractionResult":
        return cls(
            success=False,
            record_count=records_seen,
            execution_time_ms=execution_time_ms,
            error_message="Extraction timed out",
            is_timeout=True,
        )

    @classmethod
    def full_reload_required(cls, message: str, execution_time_ms: float = 0.0) -> "ExtractionResult":
        return cls(
            success=False,
            error_message=message,
            execution_time_ms=execution_time_ms,
            requires_full_reload=True,
        )
