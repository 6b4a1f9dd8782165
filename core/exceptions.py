"""
Custom exceptions for the ingestion framework with structured error context.

Each exception carries a human-readable message, a context dictionary for
debugging and monitoring, and optionally the exception it wraps.

Exception Hierarchy:
    IngestionException (base)
    ├── ValidationError
    │   └── ConnectorValidationError
    ├── ConnectorError
    │   ├── ConnectorConnectionError
    │   │   ├── ConnectionTimeoutError
    │   │   ├── AuthenticationError
    │   │   └── ConnectionCancelledError
    │   ├── ConnectorStateError
    │   └── ConnectorDisposedError
    ├── RegistryError
    │   ├── ConnectorNotRegisteredError
    │   ├── InvalidConnectorTypeError
    │   └── ConnectorInitializationError
    ├── ExtractionError
    │   ├── IncrementalSyncError
    │   ├── FullReloadRequiredError
    │   └── QueryExecutionError
    ├── TransformationError
    │   ├── RuleExecutionError
    │   ├── UnknownRuleTypeError
    │   └── ExpressionError
    ├── CredentialError (kind: CredentialErrorKind)
    │   ├── CredentialConfigurationError
    │   ├── CredentialNotFoundError
    │   ├── CredentialStorageError
    │   ├── CredentialEncryptionError
    │   ├── CredentialDecryptionError
    │   └── CredentialRotationError
    ├── SchedulingError
    │   ├── JobNotFoundError
    │   ├── JobAlreadyPausedError
    │   ├── InvalidCronExpressionError
    │   └── NotificationError
    ├── OperationCancelledError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone
import enum


class IngestionException(Exception):
    """
    Base exception for all ingestion-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (connector, job, key, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = dict(context or {})
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(IngestionException):
    """
    Mixin for errors where a later attempt may succeed.

    Use this for transient errors like:
    - Network timeouts
    - Deadlocks and resource exhaustion on the backend
    """
    pass


class NonRetryableError(IngestionException):
    """
    Mixin for errors that will fail the same way on every attempt.

    Use this for permanent errors like:
    - Authentication failures
    - Missing tracking fields
    - Decryption failures
    """
    pass


# ============================================================================
# Cancellation
# ============================================================================

class OperationCancelledError(IngestionException):
    """
    Raised inside long-running operations when the caller's cancellation
    signal is observed. Converted into a cancelled result at the connector
    and engine boundaries.
    """
    pass


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(IngestionException):
    """Base exception for validation failures."""
    pass


class ConnectorValidationError(NonRetryableError, ValidationError):
    """
    Raised when a caller chooses to turn a failed ValidationResult into an error.

    Context should include:
        - connector_id: Connector that validated the parameters
        - errors: List of "field: message" strings
    """
    pass


# ============================================================================
# Connector Errors
# ============================================================================

class ConnectorError(IngestionException):
    """Base exception for connector failures."""
    pass


class ConnectorConnectionError(ConnectorError):
    """
    Raised when connecting to or testing a backend fails.

    Context should include:
        - connector_id: Connector identifier
        - host: Backend host (never credentials)
    """
    pass


class ConnectionTimeoutError(RetryableError, ConnectorConnectionError):
    """Connect or command exceeded its configured timeout."""
    pass


class AuthenticationError(NonRetryableError, ConnectorConnectionError):
    """Backend rejected the supplied credentials."""
    pass


class ConnectionCancelledError(OperationCancelledError, ConnectorConnectionError):
    """Connection attempt cancelled by the caller."""
    pass


class ConnectorStateError(ConnectorError):
    """
    Raised when an operation requires a different connection state.

    Context should include:
        - connector_id: Connector identifier
        - state: Current connection state
        - required_state: State the operation needs
    """
    pass


class ConnectorDisposedError(ConnectorError):
    """Raised when a disposed connector instance is used."""
    pass


# ============================================================================
# Registry Errors
# ============================================================================

class RegistryError(IngestionException):
    """Base exception for connector registry and factory failures."""
    pass


class ConnectorNotRegisteredError(RegistryError):
    """No registration exists for the requested connector id."""
    pass


class InvalidConnectorTypeError(RegistryError):
    """Type is not a connector or lacks the required self-description."""
    pass


class ConnectorInitializationError(RegistryError):
    """Connector instance could not be created or initialized."""
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(IngestionException):
    """Base exception for data extraction failures."""
    pass


class IncrementalSyncError(NonRetryableError, ExtractionError):
    """
    Raised when incremental extraction state does not line up with the source.

    Context should include:
        - target: Target structure
        - tracking_field: Tracking field requested
    """
    pass


class FullReloadRequiredError(NonRetryableError, ExtractionError):
    """
    Raised when the stored change-tracking version is older than the
    minimum version the backend still retains.

    Context should include:
        - target: Target structure
        - last_version: Version carried by the caller
        - min_valid_version: Oldest version the backend can serve
    """
    pass


class QueryExecutionError(ExtractionError):
    """
    Raised when a backend query fails.

    Attributes:
        category: connection, permission, resource, constraint or other
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        category: str = "other"
    ):
        super().__init__(message, context, original_exception)
        self.category = category
        self.context["category"] = category


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(IngestionException):
    """Base exception for data transformation failures."""
    pass


class RuleExecutionError(TransformationError):
    """
    Raised when a single rule fails.

    Context should include:
        - rule_id: Identifier of the failing rule
        - rule_type: Type of the failing rule
    """

    def __init__(
        self,
        message: str,
        rule_id: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.rule_id = rule_id
        self.context["rule_id"] = rule_id


class UnknownRuleTypeError(TransformationError):
    """Rule type is not one the engine knows how to apply."""
    pass


class ExpressionError(TransformationError):
    """Expression could not be parsed or evaluated."""
    pass


# ============================================================================
# Credential Errors
# ============================================================================

class CredentialErrorKind(str, enum.Enum):
    """Credential failure categories"""
    STORAGE = "storage"
    RETRIEVAL = "retrieval"
    DECRYPTION = "decryption"
    ENCRYPTION = "encryption"
    ROTATION = "rotation"
    VALIDATION = "validation"
    ACCESS_DENIED = "access_denied"
    OTHER = "other"


class CredentialError(IngestionException):
    """
    Base exception for credential store failures.

    Attributes:
        kind: CredentialErrorKind describing which operation failed
    """

    default_kind = CredentialErrorKind.OTHER

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        kind: Optional[CredentialErrorKind] = None
    ):
        super().__init__(message, context, original_exception)
        self.kind = kind or self.default_kind
        self.context["kind"] = self.kind.value


class CredentialConfigurationError(NonRetryableError, CredentialError):
    """No master key configured for the credential store."""
    default_kind = CredentialErrorKind.OTHER


class CredentialNotFoundError(CredentialError):
    """Credential key does not exist."""
    default_kind = CredentialErrorKind.RETRIEVAL


class CredentialStorageError(CredentialError):
    """Persisting or deleting a credential failed."""
    default_kind = CredentialErrorKind.STORAGE


class CredentialEncryptionError(NonRetryableError, CredentialError):
    """Encrypting a secret failed."""
    default_kind = CredentialErrorKind.ENCRYPTION


class CredentialDecryptionError(NonRetryableError, CredentialError):
    """Stored ciphertext could not be decrypted with the configured key."""
    default_kind = CredentialErrorKind.DECRYPTION


class CredentialRotationError(CredentialError):
    """Rotating a credential failed."""
    default_kind = CredentialErrorKind.ROTATION


# ============================================================================
# Scheduling Errors
# ============================================================================

class SchedulingError(IngestionException):
    """Base exception for job scheduling failures."""
    pass


class JobNotFoundError(SchedulingError):
    """No job exists with the requested id."""
    pass


class JobAlreadyPausedError(SchedulingError):
    """Pause requested for a job that is already paused."""
    pass


class InvalidCronExpressionError(NonRetryableError, SchedulingError):
    """Cron expression could not be parsed."""
    pass


class NotificationError(SchedulingError):
    """
    Raised by notification channels when a send fails.

    Context should include:
        - job_id: Job the notification was about
        - channel: email or webhook
    """
    pass
