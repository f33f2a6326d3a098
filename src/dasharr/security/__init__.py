"""
Security module for the Dasharr metrics engine.

Components:
- CredentialCipher: Encryption at rest for service credentials
"""

from dasharr.security.cipher import (
    ENCRYPTION_PREFIX,
    CredentialCipher,
    looks_like_legacy_ciphertext,
)

__all__ = [
    "ENCRYPTION_PREFIX",
    "CredentialCipher",
    "looks_like_legacy_ciphertext",
]
