import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from main import app
from utils.ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")


@pytest.fixture
def stocked(make_community, make_user, communities, library, clock):
    community, owner = make_community(access_code="DORM1", name="Dorm")
    carol = communities.join_community(make_user("Carol"), "DORM1")
    dune = library.add_book(owner, community.id, "Dune", author="Frank Herbert", borrow_days=7)
    library.add_book(owner, community.id, "Emma", author="Jane Austen")
    library.borrow(carol, dune.id)
    return community, dune


def test_init_db(tmp_path):
    db = str(tmp_path / "fresh.db")
    result = runner.invoke(app, ["--db", db, "init-db"])
    assert result.exit_code == 0
    assert f"Database ready: {db}" in result.stdout


def test_reset_requires_confirmation(db_file, stocked, library):
    result = runner.invoke(app, ["--db", db_file, "init-db", "--reset"], input="n\n")
    assert "Reset cancelled." in result.stdout
    assert len(library.all_books()) == 2

    result = runner.invoke(app, ["--db", db_file, "init-db", "--reset", "--yes"])
    assert result.exit_code == 0
    assert library.all_books() == []


def test_seed_admin_once(db_file, accounts):
    first = runner.invoke(app, ["--db", db_file, "seed-admin", "--email", "root@example.com", "--password", "admin123"])
    second = runner.invoke(app, ["--db", db_file, "seed-admin", "--email", "root@example.com", "--password", "admin123"])

    assert "Admin account created: root@example.com" in first.stdout
    assert "Admin account already exists: root@example.com" in second.stdout
    token, user = accounts.login("root@example.com", "admin123")
    assert user.is_admin


def test_seed_admin_with_bad_email(db_file):
    result = runner.invoke(app, ["--db", db_file, "seed-admin", "--email", "root"])
    assert result.exit_code == 1
    assert "Enter a valid email address." in result.stdout


def test_books_empty(db_file):
    result = runner.invoke(app, ["--db", db_file, "books"])
    assert result.exit_code == 0
    assert "No books found." in result.stdout


def test_books_plain(db_file, stocked):
    result = runner.invoke(app, ["--db", db_file, "books"])
    assert result.exit_code == 0
    assert "Dune by Frank Herbert [Dorm] (held by Carol" in result.stdout
    assert "Emma by Jane Austen [Dorm] (available)" in result.stdout


def test_books_json_filtered_by_community(db_file, stocked):
    community, _ = stocked
    result = runner.invoke(app, ["--output", "json", "--db", db_file, "books", "--community", str(community.id)])
    payload = json.loads(result.stdout)
    assert [b["title"] for b in payload] == ["Dune", "Emma"]

    result = runner.invoke(app, ["--output", "json", "--db", db_file, "books", "--community", "999"])
    assert "No books found." in result.stdout


def test_communities_listing(db_file, stocked):
    result = runner.invoke(app, ["--db", db_file, "communities"])
    assert result.exit_code == 0
    assert "Dorm [DORM1]" in result.stdout
    assert "2 member(s), 2 book(s)" in result.stdout


def test_overdue(db_file, stocked):
    # The CLI reads the wall clock, long past the fixture clock.
    result = runner.invoke(app, ["--db", db_file, "overdue"])
    assert "Dune by Frank Herbert" in result.stdout
    assert "overdue by" in result.stdout
    assert "Emma" not in result.stdout


def test_overdue_empty(db_file):
    result = runner.invoke(app, ["--db", db_file, "overdue"])
    assert "No overdue books." in result.stdout


def test_stats(db_file, stocked):
    result = runner.invoke(app, ["--db", db_file, "stats"])
    assert result.exit_code == 0
    assert "Total Books: 2" in result.stdout
    assert "Borrowed Books: 1" in result.stdout

    result = runner.invoke(app, ["--output", "json", "--db", db_file, "stats"])
    assert json.loads(result.stdout)["available_books"] == 1


def test_rich_output(db_file, stocked):
    result = runner.invoke(app, ["--output", "rich", "--db", db_file, "stats"])
    assert result.exit_code == 0
    assert "Total Books" in result.stdout


@patch("main.subprocess.run")
@patch("main.webbrowser.open")
def test_serve_command(mock_webbrowser_open, mock_subprocess_run, db_file):
    result = runner.invoke(app, ["--db", db_file, "serve", "--port", "9001"])
    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    mock_webbrowser_open.assert_not_called()
    mock_subprocess_run.assert_called_once()
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "api:create_app" in args
    assert "--factory" in args
    assert args[args.index("--port") + 1] == "9001"
    assert mock_subprocess_run.call_args.kwargs["env"]["SHELFSHARE_DB_FILE"] == db_file
