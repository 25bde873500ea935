"""Signed OAuth state cookie.

The cookie is the client-held copy of the (shop, nonce) binding. It is a
JWT signed with SECRET_KEY so it cannot be edited, moved to another shop, or
used after the state TTL.

Cookies are handled as plain data: handlers read an inbound name -> value
map once and apply the returned ``CookieDirective`` list to the response.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt
from jwt.exceptions import InvalidTokenError

logger = logging.getLogger(__name__)

# Algorithm for cookie signing
ALGORITHM = "HS256"

OAUTH_STATE_COOKIE = "shop_oauth_state"

# Audience claim, keeps these tokens from being accepted anywhere else
STATE_AUDIENCE = "shop-oauth-state"


@dataclass(frozen=True)
class CookieDirective:
    """A Set-Cookie instruction for the response.

    ``value=None`` with ``max_age=0`` means: clear the cookie.
    """

    name: str
    value: Optional[str]
    max_age: int
    http_only: bool = True
    secure: bool = False
    same_site: str = "lax"
    path: str = "/"

    @property
    def is_clear(self) -> bool:
        return self.value is None


class StateCookieCodec:
    """Encodes and verifies the signed state cookie."""

    def __init__(
        self,
        secret: str,
        secure: bool = False,
        cookie_name: str = OAUTH_STATE_COOKIE,
        clock: Callable[[], datetime] | None = None,
    ):
        self.secret = secret
        self.secure = secure
        self.cookie_name = cookie_name
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue(self, shop: str, nonce: str, ttl_seconds: int) -> CookieDirective:
        """Build the Set-Cookie directive carrying a signed (shop, nonce)."""
        now = self._clock()
        payload = {
            "shop": shop,
            "nonce": nonce,
            "aud": STATE_AUDIENCE,
            "iat": now,
            "exp": now + timedelta(seconds=ttl_seconds),
        }
        token = jwt.encode(payload, self.secret, algorithm=ALGORITHM)
        return CookieDirective(
            name=self.cookie_name,
            value=token,
            max_age=ttl_seconds,
            secure=self.secure,
        )

    def clear(self) -> CookieDirective:
        """Build the directive that expires the cookie on the client."""
        return CookieDirective(
            name=self.cookie_name,
            value=None,
            max_age=0,
            secure=self.secure,
        )

    def read(self, token: str | None, shop: str) -> Optional[str]:
        """Return the nonce in ``token`` if it is valid and bound to ``shop``.

        Returns:
            The nonce, or None for a missing, tampered, expired, or
            foreign-shop cookie
        """
        if not token:
            return None

        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                audience=STATE_AUDIENCE,
                # Time claims are checked against the injected clock below
                options={"verify_exp": False, "verify_iat": False},
            )
        except InvalidTokenError as e:
            logger.info("Rejected state cookie for %s: %s", shop, e)
            return None

        exp = payload.get("exp")
        if exp is None or datetime.fromtimestamp(exp, tz=timezone.utc) <= self._clock():
            logger.info("State cookie for %s has expired", shop)
            return None

        if payload.get("shop") != shop:
            logger.warning(
                "State cookie shop mismatch: cookie=%s request=%s",
                payload.get("shop"),
                shop,
            )
            return None

        return payload.get("nonce") or None
