"""
Schemas shared across connectors, the transformation engine, the job
scheduler and the credential store.

Modules:
    values: Tagged row values and the type-aware comparator
    connector: Connector metadata, capabilities, configuration and results
    extraction: Extraction parameters, discovered structures and results
    transformation: Transformation rules, parameters and results
    job: Ingestion jobs, data sources and notification settings
    credential: Credential metadata and validation results
"""

__all__ = [
    "Value",
    "ValueKind",
    "ConnectorCapabilities",
    "ConnectionParameter",
    "ConnectorMetadata",
    "ConnectorConfiguration",
    "ValidationResult",
    "ConnectionResult",
    "ProgressUpdate",
    "ExtractionParameters",
    "ExtractionResult",
    "DataStructureInfo",
    "FieldInfo",
    "TransformationRule",
    "TransformationParameters",
    "TransformationResult",
    "RuleExecutionResult",
    "IngestionJobDefinition",
    "DataSourceDefinition",
    "NotificationConfig",
    "JobStatus",
    "CredentialInfo",
    "CredentialValidationResult",
]
