"""FastAPI server for the Shopify OAuth install flow."""

import asyncio
import html
import logging
import os
from contextlib import asynccontextmanager, suppress

from dotenv import load_dotenv
from fastapi import FastAPI, Query
from fastapi.responses import HTMLResponse

from shop_oauth.api import auth, health, webhooks
from shop_oauth.auth.config import OAuthConfig
from shop_oauth.auth.cookies import StateCookieCodec
from shop_oauth.auth.state_store import StateStore

load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_state_store(config: OAuthConfig, session_factory=None) -> StateStore:
    """State store wired to the configured database and cookie secret."""
    if session_factory is None:
        from shop_oauth.db.database import SessionLocal

        session_factory = SessionLocal

    codec = StateCookieCodec(config.cookie_secret, secure=config.secure_cookies)
    return StateStore(session_factory, codec, ttl_seconds=config.state_ttl_seconds)


async def sweep_periodically(store: StateStore, interval_seconds: int) -> None:
    """Expire and delete stale OAuth state until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(store.sweep)
        except Exception:
            logger.exception("OAuth state sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup/shutdown."""
    from shop_oauth.db.migrations import run_migrations

    # Run migrations on startup
    logger.info("Running database migrations...")
    try:
        run_migrations()
        logger.info("Migrations complete")
    except Exception as e:
        # State tier 1 degrades to the cache and cookie tiers
        logger.error("Migration failed: %s", e)

    config = OAuthConfig.from_env(require_credentials=False)
    if not config.api_key or not config.api_secret:
        logger.warning("SHOPIFY_API_KEY / SHOPIFY_API_SECRET not set; installs will fail")

    if getattr(app.state, "config", None) is None:
        app.state.config = config
    if getattr(app.state, "state_store", None) is None:
        app.state.state_store = build_state_store(app.state.config)

    sweeper = asyncio.create_task(
        sweep_periodically(app.state.state_store, app.state.config.sweep_interval_seconds)
    )
    logger.info("Shop OAuth server ready at %s", app.state.config.app_url)

    yield

    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await asyncio.to_thread(app.state.state_store.close)


app = FastAPI(
    title="Shop OAuth",
    description="Shopify OAuth install flow",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(auth.router)
app.include_router(webhooks.router)
app.include_router(health.router)


@app.get("/", response_class=HTMLResponse)
async def index(shop: str | None = Query(None)) -> HTMLResponse:
    """Post-install landing page."""
    if shop:
        return HTMLResponse(content=f"<h1>Shop OAuth</h1><p>Connected to {html.escape(shop)}.</p>")
    return HTMLResponse(content="<h1>Shop OAuth</h1><p>Install via /auth/begin?shop=...</p>")


def main():
    """Run the server."""
    import uvicorn

    uvicorn.run(
        "shop_oauth.server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("APP_ENV", "").lower() != "production",
    )


if __name__ == "__main__":
    main()
