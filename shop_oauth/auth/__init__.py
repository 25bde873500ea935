"""Shopify OAuth install flow."""

from .config import OAuthConfig
from .controller import AuthController, AuthRedirect, FlowStep
from .cookies import CookieDirective, StateCookieCodec
from .crypto import encrypt_token, decrypt_token
from .errors import (
    OAuthFlowError,
    ConfigurationError,
    ValidationError,
    CsrfError,
    ProviderError,
    TransientError,
)
from .nonce import generate_nonce
from .sessions import Session, SessionPersister
from .signature import validate_query_string, verify_webhook_hmac
from .state_store import StateStore
from .token_exchange import TokenExchanger, TokenGrant, parse_error_body

__all__ = [
    "OAuthConfig",
    "AuthController",
    "AuthRedirect",
    "FlowStep",
    "CookieDirective",
    "StateCookieCodec",
    "encrypt_token",
    "decrypt_token",
    "OAuthFlowError",
    "ConfigurationError",
    "ValidationError",
    "CsrfError",
    "ProviderError",
    "TransientError",
    "generate_nonce",
    "Session",
    "SessionPersister",
    "validate_query_string",
    "verify_webhook_hmac",
    "StateStore",
    "TokenExchanger",
    "TokenGrant",
    "parse_error_body",
]
