"""Authorization code exchange and provider error normalization."""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import httpx

from shop_oauth.auth.config import OAuthConfig
from shop_oauth.auth.crypto import mask_secret
from shop_oauth.auth.errors import ProviderError, TransientError, ValidationError


logger = logging.getLogger(__name__)


SHOPIFY_TOKEN_URL = "https://{shop}/admin/oauth/access_token"

# Substrings marking the "code already used or expired" case
EXPIRED_CODE_MARKERS = ("invalid", "expired", "already used")


@dataclass
class TokenGrant:
    """Successful response from the token endpoint."""

    access_token: str
    scope: str
    expires_in: Optional[int] = None
    associated_user_scope: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"TokenGrant(access_token={mask_secret(self.access_token)!r}, "
            f"scope={self.scope!r}, expires_in={self.expires_in!r})"
        )


class ErrorShape(Enum):
    """Known provider error body layouts, in match priority order."""

    OAUTH_ERROR = "oauth_error"  # {"error": ..., "error_description": ...}
    BASE_ERRORS = "base_errors"  # {"errors": {"base": [...]}}
    FIELD_ERRORS = "field_errors"  # {"errors": {"field": [...], ...}}
    MESSAGE = "message"  # {"message": ...}
    DETAIL = "detail"  # {"detail": ...} or {"details": ...}
    UNKNOWN = "unknown"  # anything else, raw body preserved


@dataclass(frozen=True)
class ProviderErrorDetail:
    """Normalized (code, description) pair extracted from an error body."""

    shape: ErrorShape
    code: str
    description: str

    @property
    def code_expired(self) -> bool:
        text = self.description.lower()
        return any(marker in text for marker in EXPIRED_CODE_MARKERS)


def _text(value: Any) -> str:
    """Flatten a message value (str, list of str, nested dict) to text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (list, tuple)):
        return "; ".join(t for t in (_text(v) for v in value) if t)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def _oauth_error(body: Any) -> Optional[tuple[str, str]]:
    if not isinstance(body, dict) or not body.get("error"):
        return None
    code = _text(body["error"])
    description = _text(body.get("error_description")) or code
    return code, description


def _base_errors(body: Any) -> Optional[tuple[str, str]]:
    if not isinstance(body, dict):
        return None
    errors = body.get("errors")
    if not isinstance(errors, dict) or "base" not in errors:
        return None
    description = _text(errors["base"])
    if not description:
        return None
    return "base", description


def _field_errors(body: Any) -> Optional[tuple[str, str]]:
    if not isinstance(body, dict):
        return None
    errors = body.get("errors")
    if not isinstance(errors, dict) or not errors:
        return None
    parts = []
    for field_name, messages in sorted(errors.items()):
        text = _text(messages)
        if text:
            parts.append(f"{field_name}: {text}")
    if not parts:
        return None
    return ",".join(sorted(errors)), "; ".join(parts)


def _message(body: Any) -> Optional[tuple[str, str]]:
    if not isinstance(body, dict):
        return None
    description = _text(body.get("message"))
    if not description:
        return None
    return _text(body.get("code")) or "message", description


def _detail(body: Any) -> Optional[tuple[str, str]]:
    if not isinstance(body, dict):
        return None
    for key in ("detail", "details"):
        description = _text(body.get(key))
        if description:
            return key, description
    return None


# Closed, ordered list of recognized shapes; UNKNOWN is the fallthrough
ERROR_SHAPE_PARSERS: tuple[tuple[ErrorShape, Callable[[Any], Optional[tuple[str, str]]]], ...] = (
    (ErrorShape.OAUTH_ERROR, _oauth_error),
    (ErrorShape.BASE_ERRORS, _base_errors),
    (ErrorShape.FIELD_ERRORS, _field_errors),
    (ErrorShape.MESSAGE, _message),
    (ErrorShape.DETAIL, _detail),
)


def _serialize_raw(body: Any) -> str:
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        return body if body.strip() else json.dumps(body)
    try:
        return json.dumps(body, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(body)


def parse_error_body(body: Any) -> ProviderErrorDetail:
    """Normalize a provider error body into a (code, description) pair.

    Tries each known shape in order and returns the first match. Bodies
    matching none of them come back as ``ErrorShape.UNKNOWN`` with the whole
    raw body serialized as the description. Never raises and never returns
    an empty code or description.
    """
    for shape, parser in ERROR_SHAPE_PARSERS:
        extracted = parser(body)
        if extracted:
            code, description = extracted
            return ProviderErrorDetail(shape=shape, code=code or shape.value, description=description)

    return ProviderErrorDetail(
        shape=ErrorShape.UNKNOWN,
        code="unknown_error",
        description=_serialize_raw(body),
    )


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class TokenExchanger:
    """Trades a single-use authorization code for an access token."""

    def __init__(
        self,
        config: OAuthConfig,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the exchanger.

        Args:
            config: OAuth configuration with client credentials
            timeout: Hard timeout for the token request in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.config = config
        self.timeout = timeout if timeout is not None else config.exchange_timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        if self.transport is not None:
            return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
        return httpx.AsyncClient(timeout=self.timeout)

    async def exchange(self, shop: str, code: str) -> TokenGrant:
        """Exchange authorization code for access token.

        Exactly one request is made. The code is single-use, so no failure
        is retried here; the caller restarts the whole flow instead.

        Args:
            shop: Shopify store domain
            code: Authorization code from callback

        Returns:
            TokenGrant with access token and granted scopes

        Raises:
            ValidationError: shop or code is empty
            ConfigurationError: client credentials are missing
            TransientError: the provider could not be reached in time
            ProviderError: the provider rejected the exchange
        """
        if not shop or not code:
            raise ValidationError("Shop and authorization code are required")
        self.config.require_credentials()

        url = SHOPIFY_TOKEN_URL.format(shop=shop)
        payload = {
            "client_id": self.config.api_key,
            "client_secret": self.config.api_secret,
            "code": code,
        }

        logger.info("Exchanging authorization code %s for %s", mask_secret(code), shop)

        try:
            async with self._client() as client:
                response = await client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientError(f"Token exchange timed out after {self.timeout}s: {e}") from e
        except httpx.RequestError as e:
            raise TransientError(f"Token exchange request failed: {type(e).__name__}: {e}") from e

        body = _response_body(response)

        if response.is_success and isinstance(body, dict) and body.get("access_token"):
            return TokenGrant(
                access_token=body["access_token"],
                scope=body.get("scope", ""),
                expires_in=body.get("expires_in"),
                associated_user_scope=body.get("associated_user_scope"),
            )

        detail = parse_error_body(body)
        logger.warning(
            "Token exchange rejected for %s: status=%s shape=%s code=%s description=%s",
            shop,
            response.status_code,
            detail.shape.value,
            detail.code,
            detail.description,
        )
        raise ProviderError(
            f"Token exchange failed ({response.status_code}): {detail.code}: {detail.description}",
            provider_code=detail.code,
            description=detail.description,
            code_expired=detail.code_expired,
            http_status=response.status_code,
        )
