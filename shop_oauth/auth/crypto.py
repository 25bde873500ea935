"""Encryption of stored access tokens and masking of secrets in logs."""

import os
import base64
import hashlib
from cryptography.fernet import Fernet, InvalidToken


def _get_encryption_key() -> bytes:
    """Get or derive the Fernet key for access tokens at rest.

    Uses ENCRYPTION_KEY if set (must be valid Fernet key),
    otherwise derives a key from SECRET_KEY.
    """
    encryption_key = os.getenv("ENCRYPTION_KEY")
    if encryption_key:
        return encryption_key.encode()

    secret_key = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")
    # Fernet requires 32 url-safe base64-encoded bytes
    derived = hashlib.sha256(secret_key.encode()).digest()
    return base64.urlsafe_b64encode(derived)


def encrypt_token(plaintext: str) -> str:
    """Encrypt an access token before it is written to the sessions table.

    Args:
        plaintext: The provider access token

    Returns:
        Fernet ciphertext as text, or "" for an empty token
    """
    if not plaintext:
        return ""

    f = Fernet(_get_encryption_key())
    return f.encrypt(plaintext.encode()).decode()


def decrypt_token(ciphertext: str) -> str | None:
    """Decrypt a stored access token.

    Returns:
        Decrypted plaintext, or None if the value is empty or was encrypted
        under a different key
    """
    if not ciphertext:
        return None

    try:
        f = Fernet(_get_encryption_key())
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        return None


def generate_encryption_key() -> str:
    """Generate a new Fernet key for the ENCRYPTION_KEY env var."""
    return Fernet.generate_key().decode()


def mask_secret(value: str | None, visible: int = 4) -> str:
    """Shorten a secret (authorization code, access token) for log output.

    Keeps the first ``visible`` characters and the length, e.g.
    ``shpa...(38 chars)``.
    """
    if not value:
        return "<empty>"
    if len(value) <= visible:
        return "*" * len(value)
    return f"{value[:visible]}...({len(value)} chars)"
