"""HMAC verification for provider callbacks and webhooks."""

import base64
import hashlib
import hmac

# Keys that carry the signature and are never part of the signed message
SIGNATURE_KEYS = frozenset({"hmac", "signature"})


class MalformedQueryError(ValueError):
    """The callback query string could not be split into key/value pairs."""


def parse_query_pairs(raw_query: str) -> list[tuple[str, str]]:
    """Split a raw query string into (key, value) pairs without decoding.

    Values are kept exactly as they appear on the wire, since the provider
    signs the received text and not a decoded form of it.

    Raises:
        MalformedQueryError: on a segment without ``=``, an empty segment,
            or an empty key
    """
    if not isinstance(raw_query, str):
        raise MalformedQueryError(f"Query string must be str, got {type(raw_query).__name__}")

    raw_query = raw_query.lstrip("?")
    if not raw_query:
        return []

    pairs = []
    for segment in raw_query.split("&"):
        if not segment:
            raise MalformedQueryError("Empty segment in query string")
        key, sep, value = segment.partition("=")
        if not sep or not key:
            raise MalformedQueryError(f"Query segment is not key=value: {segment[:40]!r}")
        pairs.append((key, value))
    return pairs


def canonical_message(pairs: list[tuple[str, str]]) -> str:
    """Build the signed message: sorted key=value pairs joined with '&'."""
    kept = [(k, v) for k, v in pairs if k not in SIGNATURE_KEYS]
    kept.sort(key=lambda item: item[0])
    return "&".join(f"{k}={v}" for k, v in kept)


def compute_hmac(message: str, secret: str) -> str:
    """HMAC-SHA256 of ``message`` as lowercase hex."""
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def validate_query_string(raw_query: str, secret: str) -> bool:
    """Verify the HMAC on a raw callback query string.

    Args:
        raw_query: Query string as received, e.g. ``code=..&hmac=..&shop=..``
        secret: Shopify API secret

    Returns:
        True if the signature matches, False if it does not or is missing

    Raises:
        MalformedQueryError: if the query string cannot be parsed
    """
    pairs = parse_query_pairs(raw_query)

    provided = next((v for k, v in pairs if k == "hmac"), None)
    if not provided:
        return False

    computed = compute_hmac(canonical_message(pairs), secret)

    # Timing-safe comparison
    return hmac.compare_digest(computed.encode(), provided.lower().encode())


def verify_webhook_hmac(body: bytes, hmac_header: str, secret: str) -> bool:
    """Verify HMAC signature on a Shopify webhook.

    Shopify signs webhook bodies with HMAC-SHA256, base64-encoded in the
    X-Shopify-Hmac-Sha256 header.

    Args:
        body: Raw request body bytes
        hmac_header: X-Shopify-Hmac-Sha256 header value
        secret: Shopify API secret

    Returns:
        True if HMAC is valid, False otherwise
    """
    if not hmac_header:
        return False

    computed = base64.b64encode(
        hmac.new(secret.encode(), body, hashlib.sha256).digest()
    ).decode()

    return hmac.compare_digest(computed.encode(), hmac_header.encode())
