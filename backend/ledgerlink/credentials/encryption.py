"""
Token vault: symmetric encryption of OAuth tokens at rest.

Implements AES-256-GCM with a fresh random 96-bit nonce per call.

SECURITY:
- Tokens are never logged, in plaintext or ciphertext form
- Any decryption failure raises DecryptionFailedError; garbage is never returned
- Key is read from ENCRYPTION_KEY (base64, hex, or 32 raw bytes)

Ciphertext format:
    "v1:" + base64(nonce || ciphertext || tag)

Usage:
    from ledgerlink.credentials.encryption import get_token_vault

    vault = get_token_vault()
    stored = vault.encrypt(access_token)
    access_token = vault.decrypt(stored)
"""

import base64
import binascii
import logging
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ledgerlink.config import get_encryption_key
from ledgerlink.credentials.errors import DecryptionFailedError, VaultConfigurationError

logger = logging.getLogger(__name__)


# AES-GCM constants
NONCE_SIZE = 12  # 96 bits, recommended for AES-GCM
TAG_SIZE = 16    # 128 bits, standard for AES-GCM
KEY_SIZE = 32    # 256 bits for AES-256

CIPHERTEXT_PREFIX = "v1:"

# Largest token accepted, in UTF-8 bytes
MAX_PLAINTEXT_BYTES = 64 * 1024


def _decode_key_string(key_string: str) -> bytes:
    """
    Decode key from string format.

    Supports:
    - Base64 encoding
    - Hex encoding
    - Raw UTF-8 (if exactly 32 bytes)
    """
    try:
        decoded = base64.b64decode(key_string, validate=True)
        if len(decoded) == KEY_SIZE:
            return decoded
    except (binascii.Error, ValueError):
        pass

    try:
        decoded = bytes.fromhex(key_string)
        if len(decoded) == KEY_SIZE:
            return decoded
    except ValueError:
        pass

    raw = key_string.encode("utf-8")
    if len(raw) == KEY_SIZE:
        return raw

    raise VaultConfigurationError(
        f"Could not decode encryption key. Expected {KEY_SIZE} bytes after decoding."
    )


class TokenVault:
    """
    AES-256-GCM vault for OAuth tokens.

    Stateless apart from the key; safe to share across tasks.
    """

    def __init__(self, key: Optional[bytes] = None, key_string: Optional[str] = None):
        """
        Args:
            key: 32-byte encryption key as bytes
            key_string: Base64, hex or raw 32-character key string

        Raises:
            VaultConfigurationError: If key is missing or wrong size
        """
        if key is not None:
            self._key = key
        elif key_string:
            self._key = _decode_key_string(key_string)
        else:
            raise VaultConfigurationError(
                "Encryption key not configured. Set ENCRYPTION_KEY environment variable."
            )

        if len(self._key) != KEY_SIZE:
            raise VaultConfigurationError(
                f"Encryption key must be {KEY_SIZE} bytes, got {len(self._key)}"
            )

        self._aesgcm = AESGCM(self._key)

    def __repr__(self) -> str:
        return "<TokenVault(algorithm=AES-256-GCM)>"

    @staticmethod
    def generate_key_string() -> str:
        """Generate a new random key as a base64 string."""
        return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("utf-8")

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a token for storage.

        The empty string is a valid input.

        Raises:
            ValueError: If plaintext exceeds MAX_PLAINTEXT_BYTES
            TypeError: If plaintext is not a string
        """
        if not isinstance(plaintext, str):
            raise TypeError("plaintext must be a string")

        data = plaintext.encode("utf-8")
        if len(data) > MAX_PLAINTEXT_BYTES:
            raise ValueError(f"Token exceeds {MAX_PLAINTEXT_BYTES} bytes")

        nonce = secrets.token_bytes(NONCE_SIZE)
        # AESGCM.encrypt returns ciphertext + tag concatenated
        sealed = self._aesgcm.encrypt(nonce, data, None)
        return CIPHERTEXT_PREFIX + base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a stored token (in memory only).

        Raises:
            DecryptionFailedError: On any malformed, tampered or foreign ciphertext
        """
        if not isinstance(ciphertext, str) or not ciphertext.startswith(CIPHERTEXT_PREFIX):
            logger.error("Decryption failed: unrecognized ciphertext format")
            raise DecryptionFailedError("Unrecognized ciphertext format")

        try:
            blob = base64.b64decode(ciphertext[len(CIPHERTEXT_PREFIX):], validate=True)
        except (binascii.Error, ValueError):
            logger.error("Decryption failed: invalid base64 payload")
            raise DecryptionFailedError("Ciphertext is not valid base64")

        if len(blob) < NONCE_SIZE + TAG_SIZE:
            logger.error("Decryption failed: ciphertext too short")
            raise DecryptionFailedError("Ciphertext is truncated")

        nonce, sealed = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, sealed, None)
        except InvalidTag:
            logger.error("Decryption failed: authentication tag mismatch")
            raise DecryptionFailedError("Decryption failed: data may have been tampered with")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            logger.error("Decryption failed: plaintext is not valid UTF-8")
            raise DecryptionFailedError("Decrypted data is not valid UTF-8")


_vault: Optional[TokenVault] = None


def get_token_vault() -> TokenVault:
    """
    Return the process-wide vault built from ENCRYPTION_KEY.

    Raises:
        VaultConfigurationError: If ENCRYPTION_KEY is missing or invalid
    """
    global _vault
    if _vault is None:
        _vault = TokenVault(key_string=get_encryption_key())
        logger.info("Token vault initialized")
    return _vault


def reset_token_vault() -> None:
    """Drop the cached vault (tests, key rotation)."""
    global _vault
    _vault = None


def validate_vault_configured() -> bool:
    """Check that ENCRYPTION_KEY yields a usable vault. Used at startup."""
    try:
        get_token_vault()
        return True
    except VaultConfigurationError as e:
        logger.error("Token vault not configured", extra={"error": str(e)})
        return False
