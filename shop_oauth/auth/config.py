"""OAuth app configuration."""

import os
from dataclasses import dataclass, field

from shop_oauth.auth.errors import ConfigurationError


DEFAULT_STATE_TTL_SECONDS = 600
DEFAULT_EXCHANGE_TIMEOUT_SECONDS = 10.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 300


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


@dataclass
class OAuthConfig:
    """Shopify OAuth configuration."""

    api_key: str
    api_secret: str = field(repr=False)
    scopes: str
    app_url: str
    access_mode: str = "offline"
    state_ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS
    exchange_timeout: float = DEFAULT_EXCHANGE_TIMEOUT_SECONDS
    sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS
    shop_domain_suffixes: tuple[str, ...] = ("myshopify.com",)
    secure_cookies: bool = False
    cookie_secret: str = field(default="dev-secret-key-change-in-production", repr=False)

    @property
    def is_online(self) -> bool:
        return self.access_mode == "online"

    @property
    def redirect_uri(self) -> str:
        return f"{self.app_url}/auth/callback"

    def require_credentials(self) -> None:
        """Raise ConfigurationError unless client credentials are present."""
        if not self.api_key or not self.api_secret:
            raise ConfigurationError(
                "SHOPIFY_API_KEY and SHOPIFY_API_SECRET must be set"
            )

    @classmethod
    def from_env(cls, require_credentials: bool = True) -> "OAuthConfig":
        """Load configuration from environment variables.

        With ``require_credentials=False`` missing client credentials are
        tolerated so the server can start; the flow raises on first use.
        """
        api_key = os.getenv("SHOPIFY_API_KEY", "")
        api_secret = os.getenv("SHOPIFY_API_SECRET", "")
        scopes = os.getenv("SHOPIFY_SCOPES", "read_products")
        app_url = os.getenv("APP_URL", "http://localhost:8000")

        access_mode = os.getenv("SHOPIFY_ACCESS_MODE", "offline").lower()
        if access_mode not in ("offline", "online"):
            raise ConfigurationError(
                f"SHOPIFY_ACCESS_MODE must be 'offline' or 'online', got {access_mode!r}"
            )

        suffixes = tuple(
            s.strip().lower().lstrip(".")
            for s in os.getenv("SHOP_DOMAIN_SUFFIXES", "myshopify.com").split(",")
            if s.strip()
        )

        config = cls(
            api_key=api_key,
            api_secret=api_secret,
            scopes=scopes,
            app_url=app_url.rstrip("/"),
            access_mode=access_mode,
            state_ttl_seconds=_int_env("OAUTH_STATE_TTL_SECONDS", DEFAULT_STATE_TTL_SECONDS),
            exchange_timeout=float(
                _int_env("OAUTH_EXCHANGE_TIMEOUT_SECONDS", int(DEFAULT_EXCHANGE_TIMEOUT_SECONDS))
            ),
            sweep_interval_seconds=_int_env(
                "OAUTH_SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL_SECONDS
            ),
            shop_domain_suffixes=suffixes or ("myshopify.com",),
            secure_cookies=os.getenv("APP_ENV", "").lower() == "production",
            cookie_secret=os.getenv("SECRET_KEY", "dev-secret-key-change-in-production"),
        )
        if require_credentials:
            config.require_credentials()
        return config
