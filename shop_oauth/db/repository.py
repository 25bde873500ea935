"""Repository classes for data access."""

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from shop_oauth.db.models import OAuthState, OAuthStateStatus, ShopSession, utcnow


class OAuthStateRepository:
    """Repository for OAuth state records (state tier 1)."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_shop(self, shop: str) -> OAuthState | None:
        """Get the state record for a shop, whatever its status."""
        return self.db.query(OAuthState).filter(OAuthState.shop == shop).first()

    def replace(
        self,
        shop: str,
        nonce: str,
        created_at: datetime,
        expires_at: datetime,
        request_ip: str | None = None,
        user_agent: str | None = None,
    ) -> OAuthState:
        """Replace any record for the shop with a new pending one."""
        self.db.query(OAuthState).filter(OAuthState.shop == shop).delete(
            synchronize_session=False
        )
        self.db.flush()

        record = OAuthState(
            shop=shop,
            nonce=nonce,
            status=OAuthStateStatus.PENDING,
            created_at=created_at,
            expires_at=expires_at,
            request_ip=request_ip,
            user_agent=user_agent,
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def mark_used(self, shop: str, used_at: datetime, nonce: str | None = None) -> bool:
        """Transition the shop's pending record to used.

        Args:
            shop: Shop domain
            used_at: When the state was consumed
            nonce: Only transition the record if it still carries this nonce

        Returns:
            True if a pending record was transitioned, False otherwise
        """
        record = self._pending(shop, nonce)
        if record is None:
            return False
        record.status = OAuthStateStatus.USED
        record.used_at = used_at
        self.db.commit()
        return True

    def mark_error(self, shop: str, nonce: str | None = None) -> bool:
        """Transition the shop's pending record to error."""
        record = self._pending(shop, nonce)
        if record is None:
            return False
        record.status = OAuthStateStatus.ERROR
        self.db.commit()
        return True

    def _pending(self, shop: str, nonce: str | None) -> OAuthState | None:
        record = self.get_by_shop(shop)
        if record is None or record.status != OAuthStateStatus.PENDING:
            return None
        if nonce is not None and record.nonce != nonce:
            return None
        return record

    def expire_pending(self, now: datetime) -> int:
        """Mark pending records past their expiry as expired."""
        count = (
            self.db.query(OAuthState)
            .filter(
                OAuthState.status == OAuthStateStatus.PENDING,
                OAuthState.expires_at <= now,
            )
            .update({OAuthState.status: OAuthStateStatus.EXPIRED}, synchronize_session=False)
        )
        self.db.commit()
        return count

    def delete_finished_before(self, cutoff: datetime) -> int:
        """Delete non-pending records whose expiry is older than ``cutoff``."""
        count = (
            self.db.query(OAuthState)
            .filter(
                OAuthState.status != OAuthStateStatus.PENDING,
                OAuthState.expires_at < cutoff,
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return count


class ShopSessionRepository:
    """Repository for stored shop sessions."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, id: str) -> ShopSession | None:
        """Get session by ID (offline_<shop> / online_<shop>)."""
        return self.db.query(ShopSession).filter(ShopSession.id == id).first()

    def list_by_shop(self, shop: str) -> list[ShopSession]:
        """List all sessions for a shop."""
        return (
            self.db.query(ShopSession)
            .filter(ShopSession.shop == shop)
            .order_by(ShopSession.id)
            .all()
        )

    def upsert(self, id: str, data: dict[str, Any]) -> ShopSession:
        """Create the session, or overwrite every given field of an existing one."""
        row = self.get_by_id(id)
        if row is None:
            row = ShopSession(id=id, **data)
            self.db.add(row)
        else:
            for key, value in data.items():
                setattr(row, key, value)
            row.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(row)
        return row

    def delete(self, id: str) -> bool:
        """Delete a session by ID. Returns True if a row was removed."""
        count = self.db.query(ShopSession).filter(ShopSession.id == id).delete(
            synchronize_session=False
        )
        self.db.commit()
        return count > 0

    def delete_by_shop(self, shop: str) -> int:
        """Delete every session for a shop."""
        count = self.db.query(ShopSession).filter(ShopSession.shop == shop).delete(
            synchronize_session=False
        )
        self.db.commit()
        return count
