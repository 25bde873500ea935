"""Pydantic schemas for API requests and responses."""

from pydantic import BaseModel, Field


class OAuthStatusResponse(BaseModel):
    """Install status for a shop. Never carries the access token."""

    shop: str
    connected: bool
    is_online: bool | None = None
    scopes: list[str] | None = None
    installed_at: str | None = None
    expires_at: str | None = None


class WebhookAck(BaseModel):
    """Acknowledgement returned to webhook deliveries."""

    status: str = "ok"
    sessions_deleted: int = Field(default=0, ge=0)


class HealthResponse(BaseModel):
    """Service health."""

    status: str
    db_revision: str | None = None
    state_db_available: bool = True
    state_cache_entries: int = Field(default=0, ge=0)
