"""Operator CLI for the Shopify OAuth service."""

import argparse
import logging
import os
import sys

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from shop_oauth.auth.crypto import generate_encryption_key

console = Console()


def cmd_migrate(args: argparse.Namespace) -> int:
    from shop_oauth.db.migrations import get_current_revision, run_migrations

    with console.status("[bold blue]Running migrations...[/bold blue]"):
        run_migrations()
    console.print(f"[green]Database at revision[/green] {get_current_revision()}")
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    from shop_oauth.auth.config import OAuthConfig
    from shop_oauth.server import build_state_store

    store = build_state_store(OAuthConfig.from_env(require_credentials=False))
    try:
        result = store.sweep()
    finally:
        store.close()
    if not result.db_available:
        console.print("[yellow]Database unavailable, nothing swept.[/yellow]")
        return 1

    console.print(
        f"Expired [bold]{result.db_expired}[/bold] pending state(s), "
        f"deleted [bold]{result.db_deleted}[/bold] finished state(s)."
    )
    return 0


def cmd_sessions(args: argparse.Namespace) -> int:
    from shop_oauth.auth.controller import normalize_shop_domain
    from shop_oauth.auth.crypto import mask_secret
    from shop_oauth.auth.sessions import SessionPersister
    from shop_oauth.db.database import get_db_session

    shop = normalize_shop_domain(args.shop)
    with get_db_session() as db:
        sessions = SessionPersister(db).find_by_shop(shop)

    if not sessions:
        console.print(f"[dim]No sessions for {shop}.[/dim]")
        return 1

    table = Table(title=f"Sessions for {shop}")
    table.add_column("ID")
    table.add_column("Mode")
    table.add_column("Scopes")
    table.add_column("Token")
    table.add_column("Expires")
    for session in sessions:
        table.add_row(
            session.id,
            "online" if session.is_online else "offline",
            ", ".join(session.scopes),
            mask_secret(session.access_token),
            session.expires_at.isoformat() if session.expires_at else "never",
        )
    console.print(table)
    return 0


def cmd_generate_key(args: argparse.Namespace) -> int:
    console.print(Panel.fit(
        f"[bold]{generate_encryption_key()}[/bold]\n"
        "[dim]Set this as ENCRYPTION_KEY in your .env[/dim]",
        title="Fernet key",
        border_style="blue",
    ))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    from shop_oauth.server import main as serve

    serve()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shop-oauth", description=__doc__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("migrate", help="Apply database migrations").set_defaults(func=cmd_migrate)
    subparsers.add_parser("sweep", help="Expire and delete stale OAuth state").set_defaults(
        func=cmd_sweep
    )

    sessions = subparsers.add_parser("sessions", help="List stored sessions for a shop")
    sessions.add_argument("shop", help="Shop domain, e.g. store.myshopify.com")
    sessions.set_defaults(func=cmd_sessions)

    subparsers.add_parser("generate-key", help="Print a new ENCRYPTION_KEY").set_defaults(
        func=cmd_generate_key
    )
    subparsers.add_parser("serve", help="Run the HTTP server").set_defaults(func=cmd_serve)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Run the CLI."""
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = build_parser().parse_args(argv)
    try:
        code = args.func(args)
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
