import logging
import os
import subprocess
import sys
import webbrowser
from typing import NoReturn, Optional

import typer
from rich.console import Console
from rich.panel import Panel

import database
from accounts import Accounts
from communities import Communities
from config import settings
from errors import ServiceError
from library import Library
from utils.ui_helpers import print_book_list, print_community_list, print_stats_result, set_output_mode

APP_NAME = f"{settings.app_name} CLI"

console = Console()

# Options shared by every command, filled in by the callback.
state = {"db_file": None}


def _db_file() -> str:
    return state["db_file"] or database.DATABASE_FILE


def _fail(error: ServiceError) -> NoReturn:
    console.print(f"[bold red]Error:[/] {error.message}")
    raise typer.Exit(code=1)


# --- Typer CLI Application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="SQLite database file (default: SHELFSHARE_DB_FILE or shelfshare.db)",
    ),
):
    """Administrative commands for the lending database."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if output:
        set_output_mode(output)
    state["db_file"] = db


@app.command("init-db")
def cli_init_db(
    reset: bool = typer.Option(False, "--reset", help="Drop every table first. All data is lost."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Create the database tables."""
    db_file = _db_file()
    if reset:
        if not yes and not typer.confirm(f"Reset {db_file}? Every row will be deleted."):
            print("Reset cancelled.")
            raise typer.Exit()
        database.reset_database(db_file)
        print(f"Database reset: {db_file}")
    else:
        database.initialize_database(db_file)
        print(f"Database ready: {db_file}")


@app.command("seed-admin")
def cli_seed_admin(
    email: str = typer.Option(settings.admin_email, "--email", help="Administrator email"),
    password: str = typer.Option(settings.admin_password, "--password", help="Administrator password"),
    name: str = typer.Option(settings.admin_name, "--name", help="Administrator display name"),
):
    """Create the administrator account unless it already exists."""
    db_file = _db_file()
    database.initialize_database(db_file)
    try:
        admin, created = Accounts(db_file).ensure_admin(name, email, password)
    except ServiceError as e:
        _fail(e)
    if created:
        print(f"Admin account created: {admin.email}")
    else:
        print(f"Admin account already exists: {admin.email}")


@app.command("books")
def cli_books(community: Optional[int] = typer.Option(None, "--community", "-c", help="Only this community's books")):
    """List books with their holder and due status."""
    db_file = _db_file()
    database.initialize_database(db_file)
    books = Library(db_file).all_books()
    if community is not None:
        books = [b for b in books if b.community_id == community]
    print_book_list(books)


@app.command("communities")
def cli_communities():
    """List communities with their access codes."""
    db_file = _db_file()
    database.initialize_database(db_file)
    print_community_list(Communities(db_file).all_communities())


@app.command("overdue")
def cli_overdue():
    """List books whose loan period has run out."""
    db_file = _db_file()
    database.initialize_database(db_file)
    print_book_list(Library(db_file).overdue_books(), empty_message="No overdue books.")


@app.command("stats")
def cli_stats():
    """Show lending statistics."""
    db_file = _db_file()
    database.initialize_database(db_file)
    print_stats_result(Library(db_file).get_statistics())


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
    open_browser: bool = typer.Option(False, "--open", help="Open the API docs in a browser"),
):
    """Start the API with Uvicorn."""
    url = f"http://{host}:{port}/docs"
    console.print(Panel.fit(f"Starting API on [link={url}]{url}[/link]", title=APP_NAME, border_style="green"))
    if open_browser:
        try:
            webbrowser.open(url)
        except webbrowser.Error:
            console.print("[yellow]Could not open a web browser.[/]")

    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:create_app",
        "--factory",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    env = dict(os.environ, SHELFSHARE_DB_FILE=_db_file())
    try:
        subprocess.run(args, env=env)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
