import itertools
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import security
from accounts import Accounts
from api import create_app
from communities import Communities
from config import settings
from database import initialize_database
from library import Library
from notifications import Mailbox


class FakeClock:
    """A clock that only moves when a test tells it to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    # Keep PBKDF2 cheap in tests.
    monkeypatch.setattr(settings, "password_iterations", 1000)


@pytest.fixture
def db_file(tmp_path):
    path = str(tmp_path / "shelfshare_test.db")
    initialize_database(path)
    return path


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def accounts(db_file, clock):
    return Accounts(db_file, clock)


@pytest.fixture
def communities(db_file, clock):
    return Communities(db_file, clock)


@pytest.fixture
def library(db_file, clock):
    return Library(db_file, clock)


@pytest.fixture
def mailbox(db_file, clock):
    return Mailbox(db_file, clock)


@pytest.fixture
def admin(accounts):
    user, _ = accounts.ensure_admin("Admin", "admin@mail.com", "admin123")
    return user


@pytest.fixture
def make_user(accounts):
    """Register a regular user: ``make_user("Alice")`` or ``make_user("Bob", community_id=1)``."""
    counter = itertools.count(1)

    def _make(name="User", email=None, password="secret123", phone="", community_id=None):
        email = email or f"{name.lower().replace(' ', '.')}{next(counter)}@example.com"
        return accounts.register(name, email, password, phone=phone, community_id=community_id)

    return _make


@pytest.fixture
def make_community(communities, make_user):
    """Create a community through self-service; returns ``(community, owner)``."""
    counter = itertools.count(1)

    def _make(owner=None, access_code=None, name=None, description=None):
        n = next(counter)
        owner = owner or make_user(f"Owner {n}")
        return communities.create_community(owner, name or f"Community {n}", access_code or f"CODE{n:02d}", description)

    return _make


@pytest.fixture
def client(db_file, clock):
    with TestClient(create_app(db_file, clock)) as test_client:
        yield test_client


@pytest.fixture
def auth(clock):
    """Authorization headers for a user: ``client.get(url, headers=auth(user))``."""

    def _headers(user):
        return {"Authorization": f"Bearer {security.issue_token(user.id, now=clock())}"}

    return _headers
