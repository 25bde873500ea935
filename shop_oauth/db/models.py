"""SQLAlchemy models for OAuth state and shop sessions."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    String,
    DateTime,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.types import TypeDecorator, CHAR
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_db_time(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC for storage and comparison."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_db_time(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime read back from the database."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise stores as CHAR(32).
    """

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        else:
            return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == "postgresql":
            return value
        else:
            if isinstance(value, uuid.UUID):
                return value.hex
            else:
                return uuid.UUID(value).hex

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class OAuthStateStatus:
    """Lifecycle values for OAuthState.status."""

    PENDING = "pending"
    USED = "used"
    EXPIRED = "expired"
    ERROR = "error"


class OAuthState(Base):
    """One in-flight authorization attempt for a shop.

    At most one row per shop; a new attempt replaces the row.
    """

    __tablename__ = "oauth_states"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    shop = Column(String(255), unique=True, nullable=False)
    nonce = Column(String(128), nullable=False)
    status = Column(String(20), nullable=False, default=OAuthStateStatus.PENDING)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime)
    request_ip = Column(String(64))
    user_agent = Column(Text)

    __table_args__ = (
        Index("ix_oauth_states_status_expires_at", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<OAuthState {self.shop} status={self.status}>"


class ShopSession(Base):
    """Stored credential for a shop, one row per shop + access mode."""

    __tablename__ = "shop_sessions"

    id = Column(String(255), primary_key=True)  # offline_<shop> / online_<shop>
    shop = Column(String(255), nullable=False, index=True)
    is_online = Column(Boolean, nullable=False, default=False)
    scope = Column(Text)
    access_token = Column(Text, nullable=False)  # Encrypted access token
    expires_at = Column(DateTime)  # NULL for offline tokens
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<ShopSession {self.id}>"
