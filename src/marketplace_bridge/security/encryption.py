"""
Encryption utilities for securing marketplace credentials at rest.

Secrets are stored as ``ivHex:ciphertextHex`` using AES-256-CBC with a fresh
random IV per encryption. The key is process-wide and comes from the
ENCRYPTION_KEY setting (64 hex characters).
"""

import os
import re
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from marketplace_bridge.utils.exceptions import (
    EncryptionKeyError, MalformedCiphertext, MigrationRequired
)
from marketplace_bridge.utils.logger import get_logger

logger = get_logger(__name__)


IV_LENGTH = 16  # AES block size in bytes
KEY_LENGTH = 32  # AES-256
MIGRATION_PREFIX = "NEEDS_MIGRATION:"

CIPHERTEXT_PATTERN = re.compile(
    r"^[0-9a-f]{%d}:[0-9a-f]+$" % (IV_LENGTH * 2), re.IGNORECASE
)


class CredentialVault:
    """
    Encrypts and decrypts credential strings.

    The key is validated once at construction. An absent or malformed key does
    not raise here; instead every encrypt/decrypt call raises
    ``EncryptionKeyError`` so a misconfigured process fails fast on first use
    rather than storing plaintext.
    """

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Initialize the vault.

        Args:
            encryption_key: 64 hex characters. Falls back to ENCRYPTION_KEY.
        """
        raw_key = encryption_key if encryption_key is not None else os.getenv("ENCRYPTION_KEY")
        self._key: Optional[bytes] = None
        self.configuration_problem: Optional[str] = None

        if not raw_key:
            self.configuration_problem = (
                "ENCRYPTION_KEY is not set. Generate one with: "
                "marketplace-bridge key generate"
            )
        elif len(raw_key) != KEY_LENGTH * 2 or not re.fullmatch(r"[0-9a-fA-F]+", raw_key):
            self.configuration_problem = (
                f"ENCRYPTION_KEY must be {KEY_LENGTH * 2} hex characters "
                f"({KEY_LENGTH} bytes), got {len(raw_key)} characters"
            )
        else:
            self._key = bytes.fromhex(raw_key)

        if self.configuration_problem:
            logger.error(f"Credential vault unusable: {self.configuration_problem}")

    @property
    def is_configured(self) -> bool:
        return self._key is not None

    def _require_key(self) -> bytes:
        if self._key is None:
            raise EncryptionKeyError(self.configuration_problem)
        return self._key

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt plaintext string.

        Args:
            plaintext: String to encrypt

        Returns:
            ``ivHex:ciphertextHex``
        """
        key = self._require_key()

        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, blob: str) -> str:
        """
        Decrypt an ``ivHex:ciphertextHex`` blob.

        Raises:
            MigrationRequired: Blob carries the legacy migration sentinel
            MalformedCiphertext: Blob is not valid hex:hex or fails to decrypt
        """
        key = self._require_key()

        if blob is None:
            raise MalformedCiphertext("Cannot decrypt an empty value")
        if blob.startswith(MIGRATION_PREFIX):
            raise MigrationRequired(
                "Stored credential needs migration. Disconnect and reconnect the marketplace account."
            )
        if not CIPHERTEXT_PATTERN.match(blob):
            raise MalformedCiphertext(
                f"Invalid encryption format. Expected ivHex:ciphertextHex, got: {blob[:20]}...",
                details={"length": len(blob)},
            )

        iv_hex, ciphertext_hex = blob.split(":", 1)
        ciphertext = bytes.fromhex(ciphertext_hex) if len(ciphertext_hex) % 2 == 0 else b""
        if not ciphertext or len(ciphertext) % IV_LENGTH:
            raise MalformedCiphertext("Ciphertext length is not a whole number of AES blocks")

        decryptor = Cipher(algorithms.AES(key), modes.CBC(bytes.fromhex(iv_hex))).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        try:
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            logger.error("Decryption failed - wrong key or corrupted data")
            raise MalformedCiphertext("Decryption failed: wrong key or corrupted data")

    @staticmethod
    def needs_migration(blob: Optional[str]) -> bool:
        return bool(blob) and blob.startswith(MIGRATION_PREFIX)

    @staticmethod
    def is_encrypted(blob: Optional[str]) -> bool:
        """True when ``blob`` has the persisted ciphertext shape."""
        return bool(blob) and CIPHERTEXT_PATTERN.match(blob) is not None


def generate_encryption_key() -> str:
    """
    Generate new encryption key for the ENCRYPTION_KEY setting.

    Returns:
        64 hex characters
    """
    return os.urandom(KEY_LENGTH).hex()
