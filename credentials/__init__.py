"""
Encrypted credential store.

Modules:
    repository: Storage collaborators (in-memory and SQLAlchemy) for encrypted records
    manager: CredentialManager - encryption, expiry, rotation and access tracking

Usage:
    from credentials.manager import CredentialManager
    from credentials.repository import SqlAlchemyCredentialRepository

Example:
    manager = CredentialManager(SqlAlchemyCredentialRepository(get_session_maker()))
    await manager.store("crm-db-password", "s3cret", source="crm", group="databases")
    password = await manager.get("crm-db-password")
"""

__all__ = [
    "CredentialManager",
    "CredentialRepository",
    "InMemoryCredentialRepository",
    "SqlAlchemyCredentialRepository",
]
