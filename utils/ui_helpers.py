import os
import json
from datetime import datetime
from typing import List, Any, Dict, Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "SHELFSHARE_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def _status(book: Any, now: Optional[datetime]) -> str:
    if book.is_available:
        return "available"
    holder = (book.holder or {}).get("name", "unknown")
    remaining = book.days_remaining(now)
    if remaining is None:
        return f"held by {holder}"
    if remaining < 0:
        return f"held by {holder}, overdue by {-remaining} day(s)"
    return f"held by {holder}, {remaining} day(s) left"

def print_book_list(books: List[Any], now: Optional[datetime] = None, empty_message: str = "No books found.") -> None:
    """Print books in the current output mode.
    - plain: '#id - Title by Author [community] (status)' lines
    - json: JSON array of Book.to_dict()
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([b.to_dict(now) for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Community", style="white")
        table.add_column("Status", style="white")
        for b in books:
            table.add_row(str(b.id), b.title, b.author or "", (b.community or {}).get("name", ""), _status(b, now))
        _console.print(table)
    else:
        for b in books:
            community = (b.community or {}).get("name", "")
            print(f"#{b.id} - {b.title} by {b.author or 'Unknown Author'} [{community}] ({_status(b, now)})")

def print_community_list(communities: List[Any]) -> None:
    mode = get_output_mode()

    if not communities:
        print("No communities found.")
        return

    if mode == "json":
        print(json.dumps([c.to_dict() for c in communities], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🏘️ Communities", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Name", style="white")
        table.add_column("Code", style="white")
        table.add_column("Owner", style="white")
        table.add_column("Members", justify="right")
        table.add_column("Books", justify="right")
        for c in communities:
            owner = (c.owner or {}).get("name", "legacy")
            table.add_row(str(c.id), c.name, c.access_code, owner, str(c.member_count), str(c.book_count))
        _console.print(table)
    else:
        for c in communities:
            owner = (c.owner or {}).get("name", "legacy")
            print(f"#{c.id} - {c.name} [{c.access_code}] owner: {owner}, {c.member_count} member(s), {c.book_count} book(s)")

STAT_LABELS = {
    "total_books": "Total Books",
    "borrowed_books": "Borrowed Books",
    "available_books": "Available Books",
    "overdue_books": "Overdue Books",
    "communities": "Communities",
    "users": "Users",
    "completed_loans": "Completed Loans",
}

def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode.
    - plain: one 'Label: value' line per metric
    - json: JSON object
    - rich: Panel with the metrics
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in STAT_LABELS.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in STAT_LABELS.items():
            print(f"{label}: {stats.get(key, 0)}")
