"""
Symmetric encryption for secrets stored by the credential manager.

AES-256-CBC with PKCS7 padding. The cipher key is the SHA-256 digest of the
configured master key and every call to encrypt() draws a fresh IV, which is
returned alongside the ciphertext so both can be persisted together.
"""

import base64
import hashlib
import os
from typing import Tuple

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from core.exceptions import (
    CredentialConfigurationError,
    CredentialDecryptionError,
    CredentialEncryptionError,
)

IV_SIZE = 16


def b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64d(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


class SecretCipher:
    """Encrypt and decrypt secret strings with a key derived from a master key."""

    def __init__(self, master_key: str):
        if not master_key:
            raise CredentialConfigurationError("Credential encryption key is not configured")
        self._key = hashlib.sha256(master_key.encode("utf-8")).digest()

    def encrypt(self, plaintext: str) -> Tuple[str, str]:
        """Return (ciphertext_b64, iv_b64)."""
        try:
            iv = os.urandom(IV_SIZE)
            padder = padding.PKCS7(algorithms.AES.block_size).padder()
            padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
            encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
            ciphertext = encryptor.update(padded) + encryptor.finalize()
        except (TypeError, ValueError) as e:
            raise CredentialEncryptionError("Failed to encrypt secret", original_exception=e)
        return b64e(ciphertext), b64e(iv)

    def decrypt(self, ciphertext_b64: str, iv_b64: str) -> str:
        try:
            iv = b64d(iv_b64)
            ciphertext = b64d(ciphertext_b64)
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (TypeError, ValueError) as e:
            # binascii.Error and UnicodeDecodeError are ValueError subclasses
            raise CredentialDecryptionError("Failed to decrypt secret", original_exception=e)
