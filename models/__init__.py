"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class, the portable JSON column type and shared enums
    job: Ingestion job definitions and their last execution outcome
    data_source: Configured sources with connection parameters and credential keys
    credential: Encrypted credentials with access and rotation tracking

Database Schema:
    All models inherit from the Base declarative class. JSON columns use
    JSONB on PostgreSQL and plain JSON on other backends.

Usage:
    from models.job import IngestionJob
    from models.data_source import DataSource
    from models.credential import Credential
    from models.base import JobStatusType
"""

__all__ = [
    "Base",
    "JSONType",
    "JobStatusType",
    "IngestionJob",
    "DataSource",
    "Credential",
]
