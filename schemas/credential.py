"""
Credential views returned by the credential manager. None of these carry plaintext.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class RotationEntry:
    timestamp: datetime
    reason: str = "Manual rotation"

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "reason": self.reason}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RotationEntry":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            reason=data.get("reason") or "Manual rotation",
        )


@dataclass
class StoredCredential:
    """Persistence record handed to and from credential repositories"""
    key: str
    encrypted_value: str
    iv: str
    created_at: datetime
    modified_at: datetime
    source: Optional[str] = None
    group: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    expires_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    access_count: int = 0
    last_rotated_at: Optional[datetime] = None
    rotation_history: List[RotationEntry] = field(default_factory=list)
    is_enabled: bool = True


@dataclass(frozen=True)
class CredentialInfo:
    key: str
    source: Optional[str]
    group: Optional[str]
    metadata: Optional[Dict[str, Any]]
    created_at: datetime
    modified_at: datetime
    expires_at: Optional[datetime]
    last_accessed_at: Optional[datetime]
    access_count: int
    last_rotated_at: Optional[datetime]
    rotation_count: int
    is_enabled: bool

    @classmethod
    def from_record(cls, record: StoredCredential) -> "CredentialInfo":
        return cls(
            key=record.key,
            source=record.source,
            group=record.group,
            metadata=dict(record.metadata) if record.metadata else None,
            created_at=record.created_at,
            modified_at=record.modified_at,
            expires_at=record.expires_at,
            last_accessed_at=record.last_accessed_at,
            access_count=record.access_count,
            last_rotated_at=record.last_rotated_at,
            rotation_count=len(record.rotation_history),
            is_enabled=record.is_enabled,
        )


@dataclass
class CredentialValidationResult:
    key: str
    is_valid: bool
    issues: List[str] = field(default_factory=list)
    found: bool = True

    @classmethod
    def not_found(cls, key: str) -> "CredentialValidationResult":
        return cls(key=key, is_valid=False, issues=[f"Credential '{key}' not found"], found=False)
