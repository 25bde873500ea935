"""Durable storage of exchanged shop credentials."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session as DBSession

from shop_oauth.auth.crypto import decrypt_token, encrypt_token
from shop_oauth.db.models import ShopSession, from_db_time, to_db_time
from shop_oauth.db.repository import ShopSessionRepository

logger = logging.getLogger(__name__)


def session_id_for(shop: str, is_online: bool) -> str:
    """Session key for a shop and access mode."""
    return f"{'online' if is_online else 'offline'}_{shop}"


@dataclass
class Session:
    """A shop credential.

    ``access_token`` stays inside the server process: it is left out of
    ``repr`` and no API schema carries it.
    """

    shop: str
    is_online: bool
    scope: str
    access_token: str = field(repr=False)
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def id(self) -> str:
        return session_id_for(self.shop, self.is_online)

    @property
    def scopes(self) -> list[str]:
        return [s.strip() for s in (self.scope or "").split(",") if s.strip()]

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.now(timezone.utc))

    @classmethod
    def from_grant(
        cls,
        shop: str,
        is_online: bool,
        scope: str,
        access_token: str,
        expires_in: int | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=expires_in) if expires_in else None
        return cls(
            shop=shop,
            is_online=is_online,
            scope=scope,
            access_token=access_token,
            expires_at=expires_at,
            created_at=now,
        )


class SessionPersister:
    """Stores and loads shop sessions, encrypting tokens at rest."""

    def __init__(self, db: DBSession):
        self.repo = ShopSessionRepository(db)

    def store(self, session: Session) -> None:
        """Upsert the session keyed by shop + mode, replacing any prior one."""
        self.repo.upsert(
            session.id,
            {
                "shop": session.shop,
                "is_online": session.is_online,
                "scope": session.scope,
                "access_token": encrypt_token(session.access_token),
                "expires_at": to_db_time(session.expires_at) if session.expires_at else None,
            },
        )
        logger.info("Stored session %s (scope=%s)", session.id, session.scope)

    def load(self, session_id: str) -> Optional[Session]:
        """Load a session by key.

        An expired session is deleted and reported as not found, as is one
        whose token can no longer be decrypted.
        """
        row = self.repo.get_by_id(session_id)
        if row is None:
            return None

        session = self._to_session(row)
        if session is None:
            logger.error("Session %s has an undecryptable token", session_id)
            return None

        if session.is_expired():
            logger.info("Session %s expired, deleting", session_id)
            self.repo.delete(session_id)
            return None

        return session

    def find_by_shop(self, shop: str) -> list[Session]:
        """All non-expired sessions for a shop."""
        sessions = []
        for row in self.repo.list_by_shop(shop):
            session = self._to_session(row)
            if session is not None and not session.is_expired():
                sessions.append(session)
        return sessions

    def delete_by_shop(self, shop: str) -> int:
        """Remove every session for a shop (app uninstall)."""
        count = self.repo.delete_by_shop(shop)
        logger.info("Deleted %d session(s) for %s", count, shop)
        return count

    @staticmethod
    def _to_session(row: ShopSession) -> Optional[Session]:
        access_token = decrypt_token(row.access_token)
        if access_token is None:
            return None
        return Session(
            shop=row.shop,
            is_online=bool(row.is_online),
            scope=row.scope or "",
            access_token=access_token,
            expires_at=from_db_time(row.expires_at),
            created_at=from_db_time(row.created_at),
        )
