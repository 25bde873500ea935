"""Migration utilities for programmatic migration running."""

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import create_engine

from shop_oauth.db.database import get_database_url

ALEMBIC_DIR = Path(__file__).parent / "alembic"


def get_alembic_config(database_url: str | None = None) -> Config:
    """Get Alembic config pointing to our migration scripts."""
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    config.set_main_option("sqlalchemy.url", database_url or get_database_url())
    return config


def run_migrations(database_url: str | None = None) -> None:
    """Run all pending migrations."""
    command.upgrade(get_alembic_config(database_url), "head")


def get_current_revision(database_url: str | None = None) -> str | None:
    """Get the current migration revision."""
    url = database_url or get_database_url()

    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(url, connect_args=connect_args)
    try:
        with engine.connect() as conn:
            context = MigrationContext.configure(conn)
            return context.get_current_revision()
    finally:
        engine.dispose()
