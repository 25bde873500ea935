"""Database layer for OAuth state and shop sessions."""

from shop_oauth.db.database import get_db, get_db_session, engine, SessionLocal
from shop_oauth.db.models import Base, OAuthState, OAuthStateStatus, ShopSession
from shop_oauth.db.repository import OAuthStateRepository, ShopSessionRepository
from shop_oauth.db.migrations import run_migrations, get_current_revision

__all__ = [
    # Database
    "get_db",
    "get_db_session",
    "engine",
    "SessionLocal",
    # Models
    "Base",
    "OAuthState",
    "OAuthStateStatus",
    "ShopSession",
    # Repositories
    "OAuthStateRepository",
    "ShopSessionRepository",
    # Migrations
    "run_migrations",
    "get_current_revision",
]
