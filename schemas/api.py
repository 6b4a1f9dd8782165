"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from dataclasses import asdict
import uuid

from schemas.connector import ConnectionParameter, ConnectionResult, ConnectorMetadata, ValidationResult
from schemas.job import DataSourceDefinition, IngestionJobDefinition, JobStatus

# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    scheduler_running: bool
    registered_connectors: int = 0
    total_jobs: int = 0
    jobs_by_status: Dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.scheduler_running:
            self.status = "unhealthy"
        elif self.jobs_by_status.get(JobStatus.FAILED.value, 0) > 0:
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "scheduler_running": True,
                "registered_connectors": 5,
                "total_jobs": 3,
                "jobs_by_status": {"Scheduled": 2, "Completed": 1}
            }
        }

# ============================================================================
# Connector Schemas
# ============================================================================

class ConnectorSummary(BaseModel):
    id: str
    name: str
    source_type: str
    version: str
    description: str = ""
    categories: List[str] = Field(default_factory=list)

    @classmethod
    def from_metadata(cls, metadata: ConnectorMetadata) -> "ConnectorSummary":
        return cls(
            id=metadata.id,
            name=metadata.name,
            source_type=metadata.source_type,
            version=metadata.version,
            description=metadata.description,
            categories=list(metadata.categories),
        )


class ParameterInfo(BaseModel):
    """One connection parameter; secrets are flagged so clients can mask input"""
    name: str
    display_name: str
    description: str = ""
    type: str = "string"
    is_required: bool = False
    is_secret: bool = False
    default_value: Optional[str] = None
    validation_pattern: Optional[str] = None
    min_value: Optional[int] = None
    max_value: Optional[int] = None
    allowed_values: List[str] = Field(default_factory=list)
    group: str = "Connection"
    order: int = 0

    @classmethod
    def from_parameter(cls, parameter: ConnectionParameter) -> "ParameterInfo":
        return cls(**asdict(parameter))


class ConnectorDetail(ConnectorSummary):
    author: str = ""
    documentation_url: Optional[str] = None
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    parameters: List[ParameterInfo] = Field(default_factory=list)

    @classmethod
    def describe(cls, metadata: ConnectorMetadata, parameters: List[ConnectionParameter]) -> "ConnectorDetail":
        summary = ConnectorSummary.from_metadata(metadata)
        return cls(
            **summary.model_dump(),
            author=metadata.author,
            documentation_url=metadata.documentation_url,
            capabilities=asdict(metadata.capabilities),
            parameters=[ParameterInfo.from_parameter(p) for p in sorted(parameters, key=lambda p: p.order)],
        )


class ConnectionParametersRequest(BaseModel):
    parameters: Dict[str, str] = Field(default_factory=dict)


class ValidationResponse(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: ValidationResult) -> "ValidationResponse":
        return cls(is_valid=result.is_valid, errors=result.error_messages(), warnings=list(result.warnings))


class ConnectionTestResponse(BaseModel):
    success: bool
    server_version: Optional[str] = None
    error_message: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    is_timeout: bool = False

    @classmethod
    def from_result(cls, result: ConnectionResult) -> "ConnectionTestResponse":
        return cls(
            success=result.success,
            server_version=result.server_version,
            error_message=result.error_message,
            errors=[] if result.success else list(result.errors),
            is_timeout=result.is_timeout,
        )

# ============================================================================
# Data Source Schemas
# ============================================================================

class DataSourceCreateRequest(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=200)
    tenant_id: Optional[str] = None
    source_type: str = Field(..., min_length=1)
    connector_id: Optional[str] = None
    connection_parameters: Dict[str, str] = Field(default_factory=dict)
    credential_keys: Dict[str, str] = Field(default_factory=dict)

    def to_definition(self) -> DataSourceDefinition:
        return DataSourceDefinition(
            id=self.id or str(uuid.uuid4()),
            name=self.name,
            tenant_id=self.tenant_id,
            source_type=self.source_type,
            connector_id=self.connector_id,
            connection_parameters=dict(self.connection_parameters),
            credential_keys=dict(self.credential_keys),
        )

# ============================================================================
# Job Schemas
# ============================================================================

class JobResponse(IngestionJobDefinition):
    """Job definition plus the next time its cron expression fires"""
    next_run_time: Optional[datetime] = None


class JobActionResponse(BaseModel):
    job_id: str
    success: bool
    message: str
