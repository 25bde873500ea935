"""OAuth install flow: ``begin`` and ``complete``.

The flow is a small state machine spread over two requests::

    idle -> pending -> validating -> exchanging -> persisted -> complete
                 \\----------\\-------------\\---> failed

``begin`` moves a shop from idle to pending (a nonce exists in the state
store). ``complete`` picks the flow up at pending and drives it to complete
or failed. Nothing survives between the two calls except the state store.
"""

import asyncio
import hmac
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Mapping, Optional
from urllib.parse import unquote_plus, urlencode

from shop_oauth.auth.config import OAuthConfig
from shop_oauth.auth.cookies import CookieDirective
from shop_oauth.auth.crypto import mask_secret
from shop_oauth.auth.errors import (
    ConfigurationError,
    CsrfError,
    OAuthFlowError,
    ProviderError,
    TransientError,
    ValidationError,
)
from shop_oauth.auth.nonce import generate_nonce
from shop_oauth.auth.sessions import Session, SessionPersister
from shop_oauth.auth.signature import MalformedQueryError, parse_query_pairs, validate_query_string
from shop_oauth.auth.state_store import StateStore
from shop_oauth.auth.token_exchange import TokenExchanger


logger = logging.getLogger(__name__)


# Shopify OAuth authorize endpoint
SHOPIFY_AUTH_URL = "https://{shop}/admin/oauth/authorize"

REQUIRED_CALLBACK_FIELDS = ("code", "hmac", "shop", "state", "timestamp")

# Accepted clock drift for callback timestamps from the future
CLOCK_SKEW_SECONDS = 60

_SHOP_LABEL = r"[a-z0-9][a-z0-9\-]*"


class FlowStep(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    VALIDATING = "validating"
    EXCHANGING = "exchanging"
    PERSISTED = "persisted"
    COMPLETE = "complete"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[FlowStep, frozenset[FlowStep]] = {
    FlowStep.IDLE: frozenset({FlowStep.PENDING}),
    FlowStep.PENDING: frozenset({FlowStep.VALIDATING, FlowStep.FAILED}),
    FlowStep.VALIDATING: frozenset({FlowStep.EXCHANGING, FlowStep.FAILED}),
    FlowStep.EXCHANGING: frozenset({FlowStep.PERSISTED, FlowStep.FAILED}),
    FlowStep.PERSISTED: frozenset({FlowStep.COMPLETE}),
    FlowStep.COMPLETE: frozenset(),
    FlowStep.FAILED: frozenset(),
}


@dataclass
class FlowContext:
    """Per-request view of the flow, used for transitions and logging."""

    shop: str
    step: FlowStep = FlowStep.IDLE
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def advance(self, step: FlowStep) -> None:
        if step not in ALLOWED_TRANSITIONS[self.step]:
            raise RuntimeError(f"Illegal OAuth flow transition {self.step.value} -> {step.value}")
        logger.debug(
            "[%s] %s: %s -> %s", self.correlation_id, self.shop, self.step.value, step.value
        )
        self.step = step

    def log_extra(self) -> dict:
        return {
            "correlation_id": self.correlation_id,
            "shop": self.shop,
            "flow_step": self.step.value,
        }


@dataclass
class AuthRedirect:
    """Outcome of a flow step: where to send the browser and which cookies to set."""

    url: str
    cookies: list[CookieDirective]
    correlation_id: str
    session: Optional[Session] = field(default=None, repr=False)


def normalize_shop_domain(shop: str) -> str:
    """Lowercase and strip scheme, path, and whitespace from a shop domain."""
    shop = shop.strip().lower()
    shop = re.sub(r"^https?://", "", shop)
    return shop.split("/", 1)[0]


def validate_shop_domain(shop: str | None, suffixes: tuple[str, ...] = ("myshopify.com",)) -> bool:
    """Validate that a shop domain is ``<label>.<allowed suffix>``.

    Args:
        shop: Shop domain to validate (already normalized)
        suffixes: Allowed parent domains

    Returns:
        True if valid, False otherwise
    """
    if not shop:
        return False
    for suffix in suffixes:
        pattern = rf"^{_SHOP_LABEL}\.{re.escape(suffix)}$"
        if re.match(pattern, shop):
            return True
    return False


class AuthController:
    """Drives the OAuth install flow for one request at a time."""

    def __init__(
        self,
        config: OAuthConfig,
        state_store: StateStore,
        exchanger: TokenExchanger,
        persister: SessionPersister,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.state_store = state_store
        self.exchanger = exchanger
        self.persister = persister
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # -- URLs ----------------------------------------------------------------

    def authorization_url(self, shop: str, nonce: str) -> str:
        """Build the Shopify authorization URL.

        Args:
            shop: Normalized shop domain
            nonce: State parameter for CSRF protection

        Returns:
            Full authorization URL to redirect the merchant to
        """
        params = {
            "client_id": self.config.api_key,
            "scope": self.config.scopes,
            "redirect_uri": self.config.redirect_uri,
            "state": nonce,
        }
        if self.config.is_online:
            params["grant_options[]"] = "per-user"

        return SHOPIFY_AUTH_URL.format(shop=shop) + "?" + urlencode(params)

    def landing_url(self, shop: str, host: str | None = None) -> str:
        params = {"shop": shop}
        if host:
            params["host"] = host
        return f"{self.config.app_url}/?{urlencode(params)}"

    # -- begin ---------------------------------------------------------------

    def begin(
        self,
        shop: str | None,
        request_ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuthRedirect:
        """Start the flow for a shop.

        Raises:
            ConfigurationError: client credentials are missing
            ValidationError: the shop domain is malformed
        """
        ctx = FlowContext(shop=shop or "")
        self.config.require_credentials()

        normalized = normalize_shop_domain(shop) if shop else ""
        if not validate_shop_domain(normalized, self.config.shop_domain_suffixes):
            logger.info("Rejected install for invalid shop domain %r", shop, extra=ctx.log_extra())
            raise ValidationError(
                "Invalid shop domain. Must be in format: store.myshopify.com",
                step=ctx.step.value,
            )
        ctx.shop = normalized

        nonce = generate_nonce()
        cookie = self.state_store.put(
            normalized,
            nonce,
            self.config.state_ttl_seconds,
            request_ip=request_ip,
            user_agent=user_agent,
        )
        ctx.advance(FlowStep.PENDING)

        logger.info(
            "[%s] OAuth started for %s", ctx.correlation_id, normalized, extra=ctx.log_extra()
        )
        return AuthRedirect(
            url=self.authorization_url(normalized, nonce),
            cookies=[cookie],
            correlation_id=ctx.correlation_id,
        )

    # -- complete ------------------------------------------------------------

    async def complete(self, raw_query: str, cookies: Mapping[str, str] | None = None) -> AuthRedirect:
        """Finish the flow from the provider's callback.

        Args:
            raw_query: The callback query string exactly as received
            cookies: Inbound request cookies (name -> value)

        Raises:
            ConfigurationError, ValidationError, CsrfError, ProviderError,
            TransientError: see ``shop_oauth.auth.errors``
        """
        ctx = FlowContext(shop="", step=FlowStep.PENDING)
        try:
            return await self._complete(ctx, raw_query, cookies or {})
        except OAuthFlowError as e:
            self._fail(ctx, e)
            raise
        except Exception:
            logger.exception(
                "[%s] OAuth callback for %s crashed at step %s",
                ctx.correlation_id,
                ctx.shop,
                ctx.step.value,
                extra=ctx.log_extra(),
            )
            if FlowStep.FAILED in ALLOWED_TRANSITIONS[ctx.step]:
                ctx.advance(FlowStep.FAILED)
            raise

    async def _complete(
        self, ctx: FlowContext, raw_query: str, cookies: Mapping[str, str]
    ) -> AuthRedirect:
        self.config.require_credentials()

        try:
            pairs = parse_query_pairs(raw_query)
        except MalformedQueryError as e:
            raise ValidationError(f"Malformed callback query string: {e}") from e

        params: dict[str, str] = {}
        for key, value in pairs:
            params.setdefault(key, unquote_plus(value))

        missing = [name for name in REQUIRED_CALLBACK_FIELDS if not params.get(name)]
        if missing:
            raise ValidationError(f"Missing callback parameters: {', '.join(missing)}")

        shop = normalize_shop_domain(params["shop"])
        ctx.shop = shop
        if not validate_shop_domain(shop, self.config.shop_domain_suffixes):
            raise ValidationError("Invalid shop domain. Must be in format: store.myshopify.com")

        ctx.advance(FlowStep.VALIDATING)

        # Signature first: nothing else is looked at for a forged request
        if not validate_query_string(raw_query, self.config.api_secret):
            raise CsrfError("HMAC signature mismatch")

        self._check_timestamp(params["timestamp"])

        # Tier 1 is read off the event loop
        expected = await asyncio.to_thread(
            self.state_store.get, shop, cookies.get(self.state_store.cookie_codec.cookie_name)
        )
        if expected is None:
            raise CsrfError("No pending OAuth state in any tier")

        if not hmac.compare_digest(expected.encode(), params["state"].encode()):
            raise CsrfError("State parameter does not match stored nonce")

        ctx.advance(FlowStep.EXCHANGING)
        logger.info(
            "[%s] Callback verified for %s, exchanging code %s",
            ctx.correlation_id,
            shop,
            mask_secret(params["code"]),
            extra=ctx.log_extra(),
        )

        try:
            grant = await self.exchanger.exchange(shop, params["code"])
        except OAuthFlowError:
            # The code was presented once already; the state cannot be redeemed again
            self._retire_state(ctx, shop, expected)
            raise

        session = Session.from_grant(
            shop=shop,
            is_online=self.config.is_online,
            scope=grant.scope,
            access_token=grant.access_token,
            expires_in=grant.expires_in,
            now=self._clock(),
        )
        self.persister.store(session)
        ctx.advance(FlowStep.PERSISTED)

        # The stored credential outranks stale state: cleanup errors are
        # logged and the flow still completes
        try:
            clear_cookie = self.state_store.delete(shop, nonce=expected)
        except Exception:
            logger.exception(
                "[%s] State cleanup failed for %s", ctx.correlation_id, shop, extra=ctx.log_extra()
            )
            clear_cookie = self.state_store.cookie_codec.clear()

        ctx.advance(FlowStep.COMPLETE)
        logger.info(
            "[%s] OAuth complete for %s (scope=%s)",
            ctx.correlation_id,
            shop,
            grant.scope,
            extra=ctx.log_extra(),
        )

        return AuthRedirect(
            url=self.landing_url(shop, params.get("host")),
            cookies=[clear_cookie],
            correlation_id=ctx.correlation_id,
            session=session,
        )

    def _check_timestamp(self, raw: str) -> None:
        try:
            timestamp = int(raw)
        except ValueError:
            raise ValidationError("Callback timestamp is not an integer")

        age = self._clock().timestamp() - timestamp
        if age > self.config.state_ttl_seconds:
            raise CsrfError(f"Callback timestamp is {int(age)}s old")
        if age < -CLOCK_SKEW_SECONDS:
            raise CsrfError(f"Callback timestamp is {int(-age)}s in the future")

    def _retire_state(self, ctx: FlowContext, shop: str, nonce: str) -> None:
        try:
            self.state_store.fail(shop, nonce=nonce)
        except Exception:
            logger.exception(
                "[%s] Could not retire OAuth state for %s",
                ctx.correlation_id,
                shop,
                extra=ctx.log_extra(),
            )

    def _fail(self, ctx: FlowContext, error: OAuthFlowError) -> None:
        error.step = error.step or ctx.step.value
        error.correlation_id = ctx.correlation_id
        if FlowStep.FAILED in ALLOWED_TRANSITIONS[ctx.step]:
            ctx.advance(FlowStep.FAILED)

        extra = ctx.log_extra()
        extra["failed_step"] = error.step
        prefix = f"[{ctx.correlation_id}] OAuth callback for {ctx.shop or '?'} failed at {error.step}"

        if isinstance(error, CsrfError):
            logger.warning("%s: possible forged request: %s", prefix, error.reason, extra=extra)
        elif isinstance(error, ProviderError):
            logger.warning(
                "%s: provider rejected exchange (%s): %s",
                prefix,
                error.provider_code,
                error.description,
                extra=extra,
            )
        elif isinstance(error, TransientError):
            logger.warning("%s: provider unreachable: %s", prefix, error, extra=extra)
        elif isinstance(error, ConfigurationError):
            logger.error("%s: %s", prefix, error, extra=extra)
        else:
            logger.info("%s: %s", prefix, error, extra=extra)
