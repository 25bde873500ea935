"""Shared dependencies for API endpoints."""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from shop_oauth.auth.config import OAuthConfig
from shop_oauth.auth.controller import AuthController
from shop_oauth.auth.sessions import SessionPersister
from shop_oauth.auth.state_store import StateStore
from shop_oauth.auth.token_exchange import TokenExchanger
from shop_oauth.db.database import get_db

__all__ = [
    "get_db",
    "get_config",
    "get_state_store",
    "get_token_exchanger",
    "get_session_persister",
    "get_auth_controller",
]


def get_config(request: Request) -> OAuthConfig:
    """OAuth configuration loaded at startup."""
    return request.app.state.config


def get_state_store(request: Request) -> StateStore:
    """The process-wide state store built at startup."""
    return request.app.state.state_store


def get_token_exchanger(config: OAuthConfig = Depends(get_config)) -> TokenExchanger:
    return TokenExchanger(config)


def get_session_persister(db: Session = Depends(get_db)) -> SessionPersister:
    return SessionPersister(db)


def get_auth_controller(
    config: OAuthConfig = Depends(get_config),
    state_store: StateStore = Depends(get_state_store),
    exchanger: TokenExchanger = Depends(get_token_exchanger),
    persister: SessionPersister = Depends(get_session_persister),
) -> AuthController:
    """Controller wired with the request's database session."""
    return AuthController(config, state_store, exchanger, persister)
