from sqlalchemy import Column, String, Integer, Boolean, DateTime, Enum, Text, Index
from datetime import datetime, timezone
import uuid
from models.base import Base, JobStatusType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestionJob(Base):
    """
    A scheduled or manually triggered extraction from one data source.

    Design:
    - cron_expression NULL means the job only runs when triggered
    - failure_count is reset to zero by a successful run only
    - notification and extraction settings are stored as JSON text and
      parsed by schemas.job on use
    """
    __tablename__ = "ingestion_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    data_source_id = Column(String(36), nullable=False, index=True)
    tenant_id = Column(String(100), nullable=True, index=True)

    # Scheduling
    cron_expression = Column(String(100), nullable=True)
    status = Column(Enum(JobStatusType), default=JobStatusType.SCHEDULED, nullable=False, index=True)
    is_paused = Column(Boolean, default=False, nullable=False)

    # Retry tracking
    failure_count = Column(Integer, default=0, nullable=False)
    max_retry_count = Column(Integer, default=3, nullable=False)

    # Settings
    notification_config_json = Column(Text, nullable=True)
    extraction_parameters_json = Column(Text, nullable=True)

    # Execution
    last_execution_time = Column(DateTime(timezone=True), nullable=True)
    last_execution_result = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    modified_at = Column(DateTime(timezone=True), nullable=True, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_job_tenant_status", "tenant_id", "status"),
    )
