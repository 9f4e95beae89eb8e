"""Encryption utilities for provider OAuth tokens.

Access and refresh tokens are encrypted with Fernet before they reach the
`calendar_connections` table.

## Key Derivation

The encryption key is derived from the application secret using PBKDF2:
- Salt: Configurable, should be unique per deployment
- Iterations: 480,000 (OWASP recommendation for PBKDF2-HMAC-SHA256)
- Key length: 32 bytes (256 bits)

## Usage

```python
from calsync.database.encryption import encrypt_token, decrypt_token

encrypted = encrypt_token("ya29.a0Af...")
decrypted = decrypt_token(encrypted)
```
"""

from __future__ import annotations

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

_fernet: Fernet | None = None


def _get_fernet() -> Fernet:
    global _fernet

    if _fernet is None:
        from calsync.config import get_settings

        settings = get_settings()
        _fernet = _create_fernet(settings.secret_key, settings.encryption_salt)

    return _fernet


def _create_fernet(secret_key: str, salt: str) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode("utf-8"),
        iterations=480_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode("utf-8")))
    return Fernet(key)


def encrypt_token(plaintext: str) -> str:
    """Encrypt a token for storage. Empty input stays empty."""
    if not plaintext:
        return ""
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_token(ciphertext: str) -> str:
    """Decrypt a stored token.

    Raises:
        ValueError: If the ciphertext was produced with another key
    """
    if not ciphertext:
        return ""

    try:
        return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        logger.error("Failed to decrypt token: invalid token or key")
        raise ValueError("Failed to decrypt token") from e


def rotate_encryption_key(
    old_secret: str,
    old_salt: str,
    new_secret: str,
    new_salt: str,
    ciphertext: str,
) -> str:
    """Re-encrypt a stored token with a new key during key rotation."""
    if not ciphertext:
        return ""

    try:
        plaintext = _create_fernet(old_secret, old_salt).decrypt(
            ciphertext.encode("utf-8")
        )
    except InvalidToken as e:
        raise ValueError("Failed to decrypt with old key") from e

    return _create_fernet(new_secret, new_salt).encrypt(plaintext).decode("utf-8")


def reset_cipher() -> None:
    """Reset the cached cipher instance (e.g. after settings change in tests)."""
    global _fernet
    _fernet = None
