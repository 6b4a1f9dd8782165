from sqlalchemy import Column, String, Boolean, DateTime
from datetime import datetime, timezone
import uuid
from models.base import Base, JSONType


class DataSource(Base):
    """
    A configured source that ingestion jobs extract from.

    Secrets never live in connection_parameters: credential_keys maps a
    parameter name to the credential store key that holds its value.
    """
    __tablename__ = "data_sources"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(200), nullable=False)
    tenant_id = Column(String(100), nullable=True, index=True)

    # Connector resolution
    source_type = Column(String(100), nullable=False, index=True)
    connector_id = Column(String(100), nullable=True)

    connection_parameters = Column(JSONType, nullable=False, default=dict)
    credential_keys = Column(JSONType, nullable=False, default=dict)

    is_enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
