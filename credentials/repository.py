"""
Storage collaborators for the credential manager.

Repositories only see StoredCredential records: ciphertext, IV and
bookkeeping. Encryption and policy live in the manager.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import copy
import logging

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import CredentialStorageError
from models.credential import Credential
from schemas.credential import RotationEntry, StoredCredential

logger = logging.getLogger(__name__)


class CredentialRepository(ABC):
    """Keyed CRUD over encrypted credential records"""

    @abstractmethod
    async def get(self, key: str) -> Optional[StoredCredential]:
        pass

    @abstractmethod
    async def list(self) -> List[StoredCredential]:
        pass

    @abstractmethod
    async def save(self, record: StoredCredential):
        """Insert or replace the record with the same key"""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass


class InMemoryCredentialRepository(CredentialRepository):
    """Dictionary-backed repository; records are copied in and out"""

    def __init__(self):
        self._records: Dict[str, StoredCredential] = {}

    async def get(self, key: str) -> Optional[StoredCredential]:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def list(self) -> List[StoredCredential]:
        return [copy.deepcopy(record) for record in self._records.values()]

    async def save(self, record: StoredCredential):
        self._records[record.key] = copy.deepcopy(record)

    async def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None


# ============================================================================
# SQLAlchemy
# ============================================================================

def _to_record(row: Credential) -> StoredCredential:
    return StoredCredential(
        key=row.key,
        encrypted_value=row.encrypted_value,
        iv=row.iv,
        created_at=row.created_at,
        modified_at=row.modified_at,
        source=row.source,
        group=row.group,
        metadata=row.credential_metadata,
        expires_at=row.expires_at,
        last_accessed_at=row.last_accessed_at,
        access_count=row.access_count or 0,
        last_rotated_at=row.last_rotated_at,
        rotation_history=[RotationEntry.from_dict(entry) for entry in (row.rotation_history or [])],
        is_enabled=row.is_enabled,
    )


def _apply(row: Credential, record: StoredCredential):
    row.encrypted_value = record.encrypted_value
    row.iv = record.iv
    row.created_at = record.created_at
    row.modified_at = record.modified_at
    row.source = record.source
    row.group = record.group
    row.credential_metadata = record.metadata
    row.expires_at = record.expires_at
    row.last_accessed_at = record.last_accessed_at
    row.access_count = record.access_count
    row.last_rotated_at = record.last_rotated_at
    row.rotation_history = [entry.to_dict() for entry in record.rotation_history]
    row.is_enabled = record.is_enabled


class SqlAlchemyCredentialRepository(CredentialRepository):
    """Persist credentials in the `credentials` table"""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def get(self, key: str) -> Optional[StoredCredential]:
        try:
            async with self._session_maker() as session:
                row = await session.get(Credential, key)
                return _to_record(row) if row is not None else None
        except SQLAlchemyError as e:
            raise CredentialStorageError("Failed to load credential", context={"key": key}, original_exception=e)

    async def list(self) -> List[StoredCredential]:
        try:
            async with self._session_maker() as session:
                result = await session.execute(select(Credential).order_by(Credential.key))
                return [_to_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise CredentialStorageError("Failed to list credentials", original_exception=e)

    async def save(self, record: StoredCredential):
        try:
            async with self._session_maker() as session:
                row = await session.get(Credential, record.key)
                if row is None:
                    row = Credential(key=record.key)
                    session.add(row)
                _apply(row, record)
                await session.commit()
        except SQLAlchemyError as e:
            raise CredentialStorageError(
                "Failed to save credential", context={"key": record.key}, original_exception=e
            )

    async def delete(self, key: str) -> bool:
        try:
            async with self._session_maker() as session:
                result = await session.execute(delete(Credential).where(Credential.key == key))
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise CredentialStorageError("Failed to delete credential", context={"key": key}, original_exception=e)
