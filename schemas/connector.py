"""
Connector self-description, configuration and operation results
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.exceptions import ConnectorValidationError


# ============================================================================
# Self-description
# ============================================================================

@dataclass(frozen=True)
class ConnectorCapabilities:
    """What a connector variant can do. Static per connector class."""
    supports_incremental: bool = False
    supports_advanced_filtering: bool = False
    supports_resume: bool = False
    supports_scheduling: bool = True
    supports_schema_discovery: bool = False
    supports_preview: bool = False
    supports_transformation: bool = True
    supports_progress_reporting: bool = True
    max_concurrent_extractions: int = 1
    supported_authentications: List[str] = field(default_factory=lambda: ["basic"])
    supported_source_types: List[str] = field(default_factory=lambda: ["generic"])


@dataclass(frozen=True)
class ConnectionParameter:
    """One entry of a connector's connection-parameter contract."""
    name: str
    display_name: str
    description: str = ""
    type: str = "string"  # string, integer, boolean, password, path
    is_required: bool = False
    is_secret: bool = False
    default_value: Optional[str] = None
    validation_pattern: Optional[str] = None
    min_value: Optional[int] = None
    max_value: Optional[int] = None
    allowed_values: List[str] = field(default_factory=list)
    group: str = "Connection"
    order: int = 0


@dataclass(frozen=True)
class ConnectorMetadata:
    id: str
    name: str
    source_type: str
    version: str = "1.0.0"
    description: str = ""
    author: str = ""
    categories: List[str] = field(default_factory=list)
    capabilities: ConnectorCapabilities = field(default_factory=ConnectorCapabilities)
    documentation_url: Optional[str] = None


# ============================================================================
# Configuration
# ============================================================================

class ConnectorConfiguration(BaseModel):
    """
    Configuration a connector is initialized with.

    Connection parameters are the only carrier of backend specific settings
    (host, credentials, timeouts, feature toggles). Instances are immutable.
    """
    connector_id: str = Field(..., min_length=1)
    display_name: str = ""
    tenant_id: Optional[str] = None
    connection_parameters: Dict[str, str] = Field(default_factory=dict)

    class Config:
        frozen = True


# ============================================================================
# Results
# ============================================================================

@dataclass(frozen=True)
class ValidationIssue:
    field_name: str
    message: str

    def __str__(self) -> str:
        return f"{self.field_name}: {self.message}"


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add_error(self, field_name: str, message: str):
        self.errors.append(ValidationIssue(field_name, message))

    def add_warning(self, message: str):
        self.warnings.append(message)

    def error_messages(self) -> List[str]:
        return [str(issue) for issue in self.errors]

    def raise_if_invalid(self, connector_id: str = ""):
        if not self.is_valid:
            raise ConnectorValidationError(
                "Connection parameters are invalid",
                context={"connector_id": connector_id, "errors": self.error_messages()}
            )


@dataclass
class ConnectionResult:
    success: bool
    connection_id: Optional[str] = None
    server_version: Optional[str] = None
    connection_info: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    is_cancelled: bool = False
    is_timeout: bool = False
    connected_at: Optional[datetime] = None

    @classmethod
    def ok(
        cls,
        connection_id: str,
        server_version: Optional[str] = None,
        connection_info: Optional[Dict[str, Any]] = None
    ) -> "ConnectionResult":
        return cls(
            success=True,
            connection_id=connection_id,
            server_version=server_version,
            connection_info=connection_info or {},
            connected_at=datetime.now(timezone.utc),
        )

    @classmethod
    def failure(cls, message: str, errors: Optional[List[str]] = None, **flags) -> "ConnectionResult":
        return cls(success=False, error_message=message, errors=list(errors or [message]), **flags)


@dataclass(frozen=True)
class ProgressUpdate:
    operation_id: str
    current: int
    total: int
    message: str = ""

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(100.0, self.current * 100.0 / self.total)
