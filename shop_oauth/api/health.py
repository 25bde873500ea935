"""Health check endpoints."""

import logging

from fastapi import APIRouter, Depends

from shop_oauth.api.deps import get_state_store
from shop_oauth.api.schemas import HealthResponse
from shop_oauth.auth.state_store import StateStore
from shop_oauth.db.migrations import get_current_revision

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/api/health", response_model=HealthResponse)
async def health(state_store: StateStore = Depends(get_state_store)) -> HealthResponse:
    """Health check endpoint."""
    try:
        revision = get_current_revision()
    except Exception as e:
        logger.warning("Could not read migration revision: %s", e)
        revision = None

    return HealthResponse(
        status="ok" if state_store.tier1_available else "degraded",
        db_revision=revision,
        state_db_available=state_store.tier1_available,
        state_cache_entries=len(state_store.cache),
    )
