"""
Tests for the encrypted credential store
"""

import pytest
from datetime import datetime, timedelta, timezone

from core.exceptions import (
    CredentialConfigurationError,
    CredentialDecryptionError,
    CredentialNotFoundError,
)
from core.security import SecretCipher
from credentials.manager import CredentialManager


class TestSecretCipher:
    """AES-256-CBC with a per-call IV"""

    def test_round_trip_uses_fresh_iv(self, master_key):
        cipher = SecretCipher(master_key)
        first = cipher.encrypt("p@ssw0rd")
        second = cipher.encrypt("p@ssw0rd")
        assert first != second
        assert "p@ssw0rd" not in first[0]
        assert cipher.decrypt(*first) == "p@ssw0rd"
        assert cipher.decrypt(*second) == "p@ssw0rd"

    def test_unicode_and_empty_values(self, master_key):
        cipher = SecretCipher(master_key)
        assert cipher.decrypt(*cipher.encrypt("")) == ""
        assert cipher.decrypt(*cipher.encrypt("schlüssel-✓")) == "schlüssel-✓"

    def test_wrong_key(self, master_key):
        ciphertext, iv = SecretCipher(master_key).encrypt("secret value that spans blocks")
        with pytest.raises(CredentialDecryptionError):
            SecretCipher("another-key").decrypt(ciphertext, iv)

    def test_corrupt_ciphertext(self, master_key):
        with pytest.raises(CredentialDecryptionError):
            SecretCipher(master_key).decrypt("not base64!", "AAAA")

    @pytest.mark.parametrize("key", ["", None])
    def test_missing_master_key(self, key):
        with pytest.raises(CredentialConfigurationError):
            SecretCipher(key)


class TestStoreAndGet:
    """Basic storage"""

    @pytest.mark.asyncio
    async def test_store_and_get(self, credential_manager, credential_repository):
        await credential_manager.store("crm/password", "s3cret", source="crm", group="databases")
        assert await credential_manager.get("crm/password") == "s3cret"

        record = await credential_repository.get("crm/password")
        assert record.encrypted_value != "s3cret"

    @pytest.mark.asyncio
    async def test_store_existing_key_updates(self, credential_manager):
        await credential_manager.store("k", "one", source="a")
        created = (await credential_manager.get_info("k")).created_at
        await credential_manager.store("k", "two", source="b")

        info = await credential_manager.get_info("k")
        assert await credential_manager.get("k") == "two"
        assert info.source == "b"
        assert info.created_at == created

    @pytest.mark.asyncio
    async def test_missing_key(self, credential_manager):
        assert await credential_manager.get("nope") is None
        assert await credential_manager.get_info("nope") is None
        assert not await credential_manager.has_credential("nope")

    @pytest.mark.asyncio
    async def test_empty_key_and_value_are_rejected(self, credential_manager):
        with pytest.raises(ValueError):
            await credential_manager.store(" ", "x")
        with pytest.raises(ValueError):
            await credential_manager.store("k", None)

    @pytest.mark.asyncio
    async def test_get_keys_filters(self, credential_manager):
        await credential_manager.store("b", "1", source="crm", group="db")
        await credential_manager.store("a", "2", source="crm", group="api")
        await credential_manager.store("c", "3", source="erp", group="db")

        assert await credential_manager.get_keys() == ["a", "b", "c"]
        assert await credential_manager.get_keys(source="crm") == ["a", "b"]
        assert await credential_manager.get_keys(group="db") == ["b", "c"]
        assert await credential_manager.get_keys(source="crm", group="db") == ["b"]

    @pytest.mark.asyncio
    async def test_manager_without_master_key(self, credential_repository):
        with pytest.raises(CredentialConfigurationError):
            CredentialManager(credential_repository, master_key="")


class TestLifecycle:
    """Disable, delete, expiry"""

    @pytest.mark.asyncio
    async def test_disable_keeps_record(self, credential_manager):
        await credential_manager.store("k", "v")
        assert await credential_manager.disable("k")
        assert await credential_manager.get("k") is None
        assert (await credential_manager.get_info("k")).is_enabled is False
        assert await credential_manager.disable("missing") is False

    @pytest.mark.asyncio
    async def test_store_reenables(self, credential_manager):
        await credential_manager.store("k", "v")
        await credential_manager.disable("k")
        await credential_manager.store("k", "w")
        assert await credential_manager.get("k") == "w"

    @pytest.mark.asyncio
    async def test_delete(self, credential_manager):
        await credential_manager.store("k", "v")
        assert await credential_manager.delete("k")
        assert await credential_manager.get_info("k") is None
        assert await credential_manager.delete("k") is False

    @pytest.mark.asyncio
    async def test_expired_credential(self, credential_manager):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        await credential_manager.store("k", "v", expires_at=past)
        assert await credential_manager.get("k") is None
        assert not await credential_manager.has_credential("k")

    @pytest.mark.asyncio
    async def test_naive_expiry_is_utc(self, credential_manager):
        future = datetime.utcnow() + timedelta(hours=1)
        await credential_manager.store("k", "v", expires_at=future)
        assert await credential_manager.get("k") == "v"


class TestRotation:
    """Rotation and its bounded history"""

    @pytest.mark.asyncio
    async def test_rotate(self, credential_manager):
        await credential_manager.store("k", "old")
        assert await credential_manager.rotate("k", "new", reason="quarterly")
        assert await credential_manager.get("k") == "new"

        info = await credential_manager.get_info("k")
        assert info.rotation_count == 1
        assert info.last_rotated_at is not None

    @pytest.mark.asyncio
    async def test_rotate_missing(self, credential_manager):
        assert await credential_manager.rotate("missing", "v") is False

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, credential_repository, master_key):
        manager = CredentialManager(credential_repository, master_key=master_key, history_limit=3)
        await manager.store("k", "v0")
        for i in range(5):
            await manager.rotate("k", f"v{i + 1}", reason=f"r{i + 1}")

        record = await credential_repository.get("k")
        assert [entry.reason for entry in record.rotation_history] == ["r3", "r4", "r5"]
        assert await manager.get("k") == "v5"


class TestValidation:
    """Validation reports issues without raising"""

    @pytest.mark.asyncio
    async def test_valid(self, credential_manager):
        await credential_manager.store("k", "v")
        result = await credential_manager.validate("k")
        assert result.is_valid
        assert result.issues == []

    @pytest.mark.asyncio
    async def test_not_found(self, credential_manager):
        result = await credential_manager.validate("k")
        assert not result.is_valid
        assert not result.found

    @pytest.mark.asyncio
    async def test_collects_issues(self, credential_manager, credential_repository):
        await credential_manager.store("k", "v", expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        await credential_manager.disable("k")

        other = CredentialManager(credential_repository, master_key="a-different-master-key")
        result = await other.validate("k")
        assert not result.is_valid
        assert result.issues[0] == "Credential is disabled"
        assert result.issues[1].startswith("Credential expired on")
        assert result.issues[2] == "Credential decryption failed"

    @pytest.mark.asyncio
    async def test_get_with_wrong_key_raises(self, credential_manager, credential_repository):
        await credential_manager.store("k", "a value long enough to span two blocks")
        other = CredentialManager(credential_repository, master_key="a-different-master-key")
        with pytest.raises(CredentialDecryptionError) as excinfo:
            await other.get("k")
        assert excinfo.value.context["key"] == "k"
        await other.drain()


class TestResolution:
    """Resolving connection parameters and access tracking"""

    @pytest.mark.asyncio
    async def test_resolve_parameters(self, credential_manager):
        await credential_manager.store("crm/password", "s3cret")
        resolved = await credential_manager.resolve_parameters({"password": "crm/password"})
        assert resolved == {"password": "s3cret"}

    @pytest.mark.asyncio
    async def test_resolve_missing(self, credential_manager):
        with pytest.raises(CredentialNotFoundError) as excinfo:
            await credential_manager.resolve_parameters({"password": "crm/password"})
        context = excinfo.value.context
        assert context["key"] == "crm/password"
        assert context["parameter"] == "password"
        assert context["kind"] == "retrieval"

    @pytest.mark.asyncio
    async def test_access_is_counted(self, credential_manager):
        await credential_manager.store("k", "v")
        await credential_manager.get("k")
        await credential_manager.get("k")
        await credential_manager.drain()

        info = await credential_manager.get_info("k")
        assert info.access_count == 2
        assert info.last_accessed_at is not None

    @pytest.mark.asyncio
    async def test_info_has_no_secret(self, credential_manager):
        await credential_manager.store("k", "top-secret", metadata={"owner": "ops"})
        info = await credential_manager.get_info("k")
        assert "top-secret" not in repr(info)
        assert info.metadata == {"owner": "ops"}
