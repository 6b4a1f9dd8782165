"""
Pydantic schemas for ingestion jobs, data sources and notifications
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
import enum
import json
import logging

from schemas.extraction import ExtractionParameters
from schemas.transformation import TransformationParameters

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, enum.Enum):
    """Ingestion job status"""
    SCHEDULED = "Scheduled"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    PAUSED = "Paused"


class NotificationMethod(str, enum.Enum):
    EMAIL = "Email"
    WEBHOOK = "Webhook"
    BOTH = "Both"


class NotificationConfig(BaseModel):
    """Per-job notification settings stored as JSON on the job"""
    method: NotificationMethod = NotificationMethod.EMAIL
    email_recipients: List[str] = Field(default_factory=list)
    webhook_urls: List[str] = Field(default_factory=list)
    notify_on_completion: bool = True
    notify_on_failure: bool = True
    message_template: Optional[str] = None

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "NotificationConfig":
        """Parse stored JSON, falling back to defaults when it is malformed"""
        if not raw:
            return cls()
        try:
            return cls.model_validate_json(raw)
        except ValueError as e:
            logger.warning(f"Invalid notification config, using defaults: {e}")
            return cls()


class JobExtractionSpec(BaseModel):
    """
    Shape of a job's extraction_parameters_json.

    Unknown top-level keys are treated as filter criteria, which keeps flat
    {"column": "value"} payloads working.
    """
    extraction: ExtractionParameters = Field(default_factory=ExtractionParameters)
    transformation: Optional[TransformationParameters] = None

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "JobExtractionSpec":
        if not raw:
            return cls()
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("Extraction parameters must be a JSON object")
        if "extraction" in payload or "transformation" in payload:
            return cls.model_validate(payload)

        known = set(ExtractionParameters.model_fields)
        extraction_fields = {k: v for k, v in payload.items() if k in known}
        filters = {k: v for k, v in payload.items() if k not in known}
        if filters:
            merged = dict(extraction_fields.get("filter_criteria") or {})
            merged.update(filters)
            extraction_fields["filter_criteria"] = merged
        return cls(extraction=ExtractionParameters(**extraction_fields))


class IngestionJobDefinition(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    data_source_id: str = Field(..., min_length=1)
    tenant_id: Optional[str] = None
    cron_expression: Optional[str] = None
    status: JobStatus = JobStatus.SCHEDULED
    is_paused: bool = False
    failure_count: int = Field(0, ge=0)
    max_retry_count: int = Field(3, ge=1)
    notification_config_json: Optional[str] = None
    extraction_parameters_json: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    modified_at: Optional[datetime] = None
    last_execution_time: Optional[datetime] = None
    last_execution_result: Optional[str] = None

    class Config:
        from_attributes = True

    @field_validator("cron_expression")
    def blank_cron_is_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v.strip() if v else v

    @property
    def is_recurring(self) -> bool:
        return bool(self.cron_expression)

    @property
    def notification_config(self) -> NotificationConfig:
        return NotificationConfig.from_json(self.notification_config_json)


class DataSourceDefinition(BaseModel):
    """
    A configured source a job extracts from.

    credential_keys maps a connection-parameter name to the credential store
    key holding its value; resolved secrets override stored parameters.
    """
    id: str
    name: str
    tenant_id: Optional[str] = None
    source_type: str
    connector_id: Optional[str] = None
    connection_parameters: Dict[str, str] = Field(default_factory=dict)
    credential_keys: Dict[str, str] = Field(default_factory=dict)
    is_enabled: bool = True

    class Config:
        from_attributes = True


class JobCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    data_source_id: str
    tenant_id: Optional[str] = None
    cron_expression: Optional[str] = None
    max_retry_count: int = Field(3, ge=1)
    notification_config: Optional[NotificationConfig] = None
    extraction_parameters: Optional[Dict[str, Any]] = None

    def to_definition(self) -> IngestionJobDefinition:
        return IngestionJobDefinition(
            name=self.name,
            description=self.description,
            data_source_id=self.data_source_id,
            tenant_id=self.tenant_id,
            cron_expression=self.cron_expression,
            max_retry_count=self.max_retry_count,
            notification_config_json=(
                self.notification_config.model_dump_json() if self.notification_config else None
            ),
            extraction_parameters_json=(
                json.dumps(self.extraction_parameters) if self.extraction_parameters else None
            ),
        )


class JobUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    cron_expression: Optional[str] = None
    is_paused: Optional[bool] = None
    max_retry_count: Optional[int] = Field(None, ge=1)
    notification_config: Optional[NotificationConfig] = None
    extraction_parameters: Optional[Dict[str, Any]] = None
