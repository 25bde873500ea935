"""One-time OAuth state tokens."""

import secrets

NONCE_BYTES = 32


def generate_nonce() -> str:
    """Generate a cryptographically secure nonce for OAuth state.

    Returns:
        64-character lowercase hex string (256 bits of entropy)
    """
    return secrets.token_hex(NONCE_BYTES)
