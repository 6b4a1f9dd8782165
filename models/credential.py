from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, Index
from models.base import Base, JSONType


class Credential(Base):
    """
    Encrypted secret keyed by a unique name.

    Purpose:
    - Keep connection secrets out of data source records
    - Track access and rotation for auditing

    Design:
    - encrypted_value and iv are base64 text; plaintext is never stored
    - rotation_history holds at most the configured number of entries,
      oldest first
    """
    __tablename__ = "credentials"

    key = Column(String(255), primary_key=True)

    # Secret
    encrypted_value = Column(Text, nullable=False)
    iv = Column(String(64), nullable=False)

    # Classification
    source = Column(String(100), nullable=True)
    group = Column("credential_group", String(100), nullable=True)
    credential_metadata = Column("metadata", JSONType, nullable=True)

    # Lifecycle
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    modified_at = Column(DateTime(timezone=True), nullable=False)
    is_enabled = Column(Boolean, default=True, nullable=False)

    # Access tracking
    last_accessed_at = Column(DateTime(timezone=True), nullable=True)
    access_count = Column(Integer, default=0, nullable=False)

    # Rotation
    last_rotated_at = Column(DateTime(timezone=True), nullable=True)
    rotation_history = Column(JSONType, nullable=False, default=list)

    __table_args__ = (
        Index("idx_credential_source_group", "source", "credential_group"),
    )
