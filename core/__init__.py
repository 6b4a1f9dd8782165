"""
Core utilities and configuration for the ingestion framework.

This package provides foundational components used by connectors, the
transformation engine, the job scheduler and the credential store:

Modules:
    config: Application configuration and environment variable management
    database: Database engine and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and secret masking
    security: Symmetric encryption of stored secrets

Usage:
    from core.config import settings
    from core.database import get_session_maker
    from core.exceptions import ConnectorError, CredentialDecryptionError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with get_session_maker()() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "get_session_maker",
    "setup_logging",
    "mask_secrets",
    "SecretCipher",
    # Exceptions
    "IngestionException",
    "RetryableError",
    "NonRetryableError",
    "OperationCancelledError",
    "ValidationError",
    "ConnectorValidationError",
    "ConnectorError",
    "ConnectorConnectionError",
    "ConnectionTimeoutError",
    "AuthenticationError",
    "ConnectionCancelledError",
    "ConnectorStateError",
    "ConnectorDisposedError",
    "RegistryError",
    "ConnectorNotRegisteredError",
    "InvalidConnectorTypeError",
    "ConnectorInitializationError",
    "ExtractionError",
    "IncrementalSyncError",
    "FullReloadRequiredError",
    "QueryExecutionError",
    "TransformationError",
    "RuleExecutionError",
    "UnknownRuleTypeError",
    "ExpressionError",
    "CredentialErrorKind",
    "CredentialError",
    "CredentialConfigurationError",
    "CredentialNotFoundError",
    "CredentialStorageError",
    "CredentialEncryptionError",
    "CredentialDecryptionError",
    "CredentialRotationError",
    "SchedulingError",
    "JobNotFoundError",
    "JobAlreadyPausedError",
    "InvalidCronExpressionError",
    "NotificationError",
]
