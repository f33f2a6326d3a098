"""
Encryption at rest for service credentials.

CredentialCipher encrypts small secrets (API keys, passwords) before they are
written to the database and decrypts them on read. Ciphertexts are Fernet
tokens (AES-128-CBC + HMAC-SHA256) carrying a versioned prefix so that future
formats can coexist with this one.

Key precedence:
1. Explicit configured key (stretched with SHA-256 when it is not a Fernet key)
2. Key derived from the application secret
3. Key file in the config directory
4. Freshly generated key, persisted to the key file with mode 0600

Decryption failures are soft: the value is assumed to be legacy plaintext
and returned unchanged. Encryption failures raise EncryptionError.
"""

from __future__ import annotations

import base64
import hashlib
import os
import re
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from cryptography.fernet import Fernet, InvalidToken

from dasharr.errors import EncryptionError
from dasharr.logging import get_logger

if TYPE_CHECKING:
    from dasharr.config import EncryptionConfig

logger = get_logger(__name__)

# Prefix identifying values written by this module
ENCRYPTION_PREFIX = "enc:v1:"

KEY_FILE_NAME = ".encryption.key"
KEY_FILE_MODE = 0o600

_LEGACY_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+=*$")
_LEGACY_MIN_LENGTH = 32


def looks_like_legacy_ciphertext(value: str) -> bool:
    """
    Recognize ciphertexts written before the versioned prefix existed.

    Those were bare base64 strings. URLs and short tokens are never treated
    as ciphertext. Remove once every installation has run the v2 migration.
    """
    return (
        len(value) > _LEGACY_MIN_LENGTH
        and "://" not in value
        and _LEGACY_BASE64_RE.match(value) is not None
    )


def _stretch(material: str) -> bytes:
    """Turn arbitrary key material into a Fernet key."""
    return base64.urlsafe_b64encode(hashlib.sha256(material.encode()).digest())


def _is_fernet_key(candidate: str | bytes) -> bool:
    try:
        Fernet(candidate)
    except (ValueError, TypeError):
        return False
    return True


class CredentialCipher:
    """
    Encrypts and decrypts credential fields.

    The key is resolved lazily on first use and kept for the lifetime of the
    instance. Resolution is guarded by a lock because database migrations call
    into the cipher from the connection thread.

    Example:
        >>> cipher = CredentialCipher(key="a-long-configured-key")
        >>> token = cipher.encrypt("secret123")
        >>> cipher.is_encrypted(token)
        True
        >>> cipher.decrypt(token)
        'secret123'
    """

    def __init__(
        self,
        *,
        key: str | None = None,
        secret: str | None = None,
        config_dir: str | Path | None = None,
    ) -> None:
        """
        Initialize the cipher.

        Args:
            key: Explicit encryption key.
            secret: Application secret to derive a key from when no key is given.
            config_dir: Directory holding the generated key file.
        """
        self._configured_key = key
        self._secret = secret
        self._key_file = Path(config_dir) / KEY_FILE_NAME if config_dir else None
        self._fernet: Fernet | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: EncryptionConfig) -> CredentialCipher:
        """Create a CredentialCipher from configuration."""
        return cls(key=config.key, secret=config.secret, config_dir=config.config_dir)

    @property
    def key_file(self) -> Path | None:
        """Path of the generated key file, if file persistence is configured."""
        return self._key_file

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            with self._lock:
                if self._fernet is None:
                    self._fernet = Fernet(self._resolve_key())
        return self._fernet

    def _resolve_key(self) -> bytes:
        if self._configured_key:
            logger.info("Using configured encryption key")
            if _is_fernet_key(self._configured_key):
                return self._configured_key.encode()
            return _stretch(self._configured_key)

        if self._secret:
            logger.info("Deriving encryption key from application secret")
            return _stretch(f"{self._secret}:encryption")

        existing = self._read_key_file()
        if existing is not None:
            return existing

        key = Fernet.generate_key()
        self._write_key_file(key)
        return key

    def _read_key_file(self) -> bytes | None:
        if self._key_file is None or not self._key_file.exists():
            return None
        try:
            content = self._key_file.read_bytes().strip()
        except OSError as e:
            logger.warning(
                "Failed to read encryption key file",
                extra={"key_file": str(self._key_file), "error": str(e)},
            )
            return None
        if not _is_fernet_key(content):
            logger.warning(
                "Encryption key file is invalid, generating a new key",
                extra={"key_file": str(self._key_file)},
            )
            return None
        logger.debug("Loaded existing encryption key")
        return content

    def _write_key_file(self, key: bytes) -> None:
        if self._key_file is None:
            logger.warning("No config directory set, encryption key is kept in memory only")
            return
        try:
            self._key_file.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(
                self._key_file,
                os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
                KEY_FILE_MODE,
            )
            with os.fdopen(fd, "wb") as f:
                f.write(key)
            # The mode passed to os.open is masked by the umask
            os.chmod(self._key_file, KEY_FILE_MODE)
            logger.info(
                "Encryption key saved to file",
                extra={"key_file": str(self._key_file)},
            )
        except OSError as e:
            logger.warning(
                "Failed to persist encryption key, using in-memory key for this process",
                extra={"key_file": str(self._key_file), "error": str(e)},
            )

    def is_encrypted(self, value: str | None) -> bool:
        """
        Check whether a stored value is already ciphertext.

        Args:
            value: Stored value.

        Returns:
            True for prefixed ciphertext and for legacy unprefixed ciphertext.
        """
        if not value:
            return False
        if value.startswith(ENCRYPTION_PREFIX):
            return True
        return looks_like_legacy_ciphertext(value)

    def encrypt(self, plaintext: str | None) -> str | None:
        """
        Encrypt a credential.

        Input carrying the ciphertext prefix is returned unchanged. None stays
        None and the empty string stays empty. Unprefixed values are always
        encrypted, even when they look like legacy ciphertext.

        Raises:
            EncryptionError: If the value cannot be encrypted.
        """
        if plaintext is None or plaintext == "":
            return plaintext
        if plaintext.startswith(ENCRYPTION_PREFIX):
            return plaintext

        try:
            token = self._get_fernet().encrypt(plaintext.encode())
        except Exception as e:
            logger.error("Failed to encrypt data", extra={"error": str(e)})
            raise EncryptionError("Encryption failed") from e

        return ENCRYPTION_PREFIX + token.decode()

    def decrypt(self, value: str | None) -> str | None:
        """
        Decrypt a stored credential.

        Values that cannot be decrypted are treated as legacy plaintext and
        returned unchanged.
        """
        if value is None or value == "":
            return value

        token = value[len(ENCRYPTION_PREFIX) :] if value.startswith(ENCRYPTION_PREFIX) else value
        try:
            return self._get_fernet().decrypt(token.encode()).decode()
        except (InvalidToken, ValueError, TypeError):
            logger.debug("Decryption failed, assuming legacy unencrypted data")
            return value

    def encrypt_many(self, values: dict[str, str | None]) -> dict[str, str | None]:
        """Encrypt every value of a mapping."""
        return {name: self.encrypt(value) for name, value in values.items()}

    def decrypt_many(self, values: dict[str, str | None]) -> dict[str, str | None]:
        """Decrypt every value of a mapping."""
        return {name: self.decrypt(value) for name, value in values.items()}
