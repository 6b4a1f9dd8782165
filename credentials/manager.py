"""
Credential manager: encryption, expiry, rotation and access tracking.

Mutating operations (store, delete, disable, rotate) run under one
asyncio.Lock per manager so read-modify-write sequences never interleave.
Reads do not take the lock; their access statistics are recorded by a
background task whose failure is only logged.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set
import asyncio
import logging

from core.config import settings
from core.exceptions import (
    CredentialDecryptionError,
    CredentialError,
    CredentialErrorKind,
    CredentialNotFoundError,
    CredentialRotationError,
)
from core.security import SecretCipher
from credentials.repository import CredentialRepository
from schemas.credential import CredentialInfo, CredentialValidationResult, RotationEntry, StoredCredential

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # Some backends hand timestamps back without tzinfo; they are stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _require_key(key: str):
    if not key or not key.strip():
        raise ValueError("Credential key cannot be empty")


class CredentialManager:
    """Stores secrets encrypted and hands them back to authorized callers"""

    def __init__(
        self,
        repository: CredentialRepository,
        master_key: Optional[str] = None,
        history_limit: Optional[int] = None
    ):
        self._repository = repository
        self._cipher = SecretCipher(master_key or settings.CREDENTIAL_ENCRYPTION_KEY)
        self._history_limit = history_limit or settings.CREDENTIAL_ROTATION_HISTORY_LIMIT
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    @staticmethod
    def _is_expired(record: StoredCredential, now: Optional[datetime] = None) -> bool:
        expires_at = _aware(record.expires_at)
        return expires_at is not None and expires_at < (now or _utcnow())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def store(
        self,
        key: str,
        value: str,
        source: Optional[str] = None,
        group: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        expires_at: Optional[datetime] = None
    ):
        """Encrypt and upsert a credential; an existing key is updated in place"""
        _require_key(key)
        if value is None:
            raise ValueError("Credential value cannot be None")

        encrypted_value, iv = self._cipher.encrypt(value)
        async with self._lock:
            now = _utcnow()
            record = await self._repository.get(key)
            if record is None:
                record = StoredCredential(
                    key=key,
                    encrypted_value=encrypted_value,
                    iv=iv,
                    created_at=now,
                    modified_at=now,
                )
                action = "Stored"
            else:
                record.encrypted_value = encrypted_value
                record.iv = iv
                record.modified_at = now
                record.is_enabled = True
                action = "Updated"
            record.source = source
            record.group = group
            record.metadata = dict(metadata) if metadata else None
            record.expires_at = expires_at
            await self._repository.save(record)
        logger.info(f"{action} credential: {key}")

    async def delete(self, key: str) -> bool:
        """Remove the credential record entirely"""
        _require_key(key)
        async with self._lock:
            deleted = await self._repository.delete(key)
        if deleted:
            logger.info(f"Deleted credential: {key}")
        return deleted

    async def disable(self, key: str) -> bool:
        """Keep the record but stop serving it"""
        _require_key(key)
        async with self._lock:
            record = await self._repository.get(key)
            if record is None:
                return False
            record.is_enabled = False
            record.modified_at = _utcnow()
            await self._repository.save(record)
        logger.info(f"Disabled credential: {key}")
        return True

    async def rotate(self, key: str, new_value: str, reason: Optional[str] = None) -> bool:
        """
        Re-encrypt a credential with a new value.

        Returns False when the key does not exist. The rotation history keeps
        the most recent entries up to the configured limit.
        """
        _require_key(key)
        if new_value is None:
            raise ValueError("New credential value cannot be None")

        try:
            async with self._lock:
                record = await self._repository.get(key)
                if record is None:
                    return False

                now = _utcnow()
                history = list(record.rotation_history)
                history.append(RotationEntry(timestamp=now, reason=reason or "Manual rotation"))
                record.rotation_history = history[-self._history_limit:]

                record.encrypted_value, record.iv = self._cipher.encrypt(new_value)
                record.last_rotated_at = now
                record.modified_at = now
                await self._repository.save(record)
        except CredentialError as e:
            if e.kind is CredentialErrorKind.STORAGE or e.kind is CredentialErrorKind.ENCRYPTION:
                raise CredentialRotationError(
                    f"Failed to rotate credential: {key}",
                    context={"key": key},
                    original_exception=e
                )
            raise

        logger.info(f"Rotated credential: {key}")
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        """
        Decrypted value, or None when the key is missing, disabled or expired.

        Raises CredentialDecryptionError when the stored ciphertext cannot be
        decrypted with the configured key.
        """
        _require_key(key)
        record = await self._repository.get(key)
        if record is None or not record.is_enabled:
            logger.warning(f"Credential not found or disabled: {key}")
            return None
        if self._is_expired(record):
            logger.warning(f"Credential has expired: {key}")
            return None

        self._schedule_access_update(key)
        try:
            return self._cipher.decrypt(record.encrypted_value, record.iv)
        except CredentialDecryptionError as e:
            logger.error(f"Failed to decrypt credential: {key}")
            e.context["key"] = key
            raise

    async def has_credential(self, key: str) -> bool:
        _require_key(key)
        record = await self._repository.get(key)
        return record is not None and record.is_enabled and not self._is_expired(record)

    async def get_keys(self, source: Optional[str] = None, group: Optional[str] = None) -> List[str]:
        records = await self._repository.list()
        return sorted(
            record.key for record in records
            if (source is None or record.source == source) and (group is None or record.group == group)
        )

    async def get_info(self, key: str) -> Optional[CredentialInfo]:
        """Metadata about a credential; never includes the secret"""
        _require_key(key)
        record = await self._repository.get(key)
        return CredentialInfo.from_record(record) if record is not None else None

    async def validate(self, key: str) -> CredentialValidationResult:
        _require_key(key)
        record = await self._repository.get(key)
        if record is None:
            return CredentialValidationResult.not_found(key)

        issues = []
        if not record.is_enabled:
            issues.append("Credential is disabled")
        if self._is_expired(record):
            issues.append(f"Credential expired on {_aware(record.expires_at).isoformat()}")
        try:
            self._cipher.decrypt(record.encrypted_value, record.iv)
        except CredentialDecryptionError:
            issues.append("Credential decryption failed")

        return CredentialValidationResult(key=key, is_valid=not issues, issues=issues)

    async def resolve_parameters(self, credential_keys: Dict[str, str]) -> Dict[str, str]:
        """
        Resolve {parameter name: credential key} into {parameter name: secret}.

        Raises CredentialNotFoundError for a key that is missing, disabled or
        expired, naming the parameter but never the value.
        """
        resolved = {}
        for parameter, key in (credential_keys or {}).items():
            value = await self.get(key)
            if value is None:
                raise CredentialNotFoundError(
                    f"Credential '{key}' for parameter '{parameter}' is not available",
                    context={"key": key, "parameter": parameter}
                )
            resolved[parameter] = value
        return resolved

    # ------------------------------------------------------------------
    # Access tracking
    # ------------------------------------------------------------------

    def _schedule_access_update(self, key: str):
        task = asyncio.create_task(self._record_access(key))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record_access(self, key: str):
        try:
            async with self._lock:
                record = await self._repository.get(key)
                if record is None:
                    return
                record.access_count += 1
                record.last_accessed_at = _utcnow()
                await self._repository.save(record)
        except Exception as e:
            logger.warning(f"Failed to record access for credential {key}: {e}")

    async def drain(self):
        """Wait for outstanding access-statistics updates"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
