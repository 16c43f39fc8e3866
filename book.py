from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

SECONDS_PER_DAY = 24 * 60 * 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as stored in SQLite; naive values are treated as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_remaining(borrowed_at: Any, borrow_days: int, now: Optional[datetime] = None) -> Optional[int]:
    """Whole days left before a loan is due.

    Positive means time left, zero means due today and a negative value is the
    number of days overdue. Elapsed time is counted in completed days, so the
    result never increases as ``now`` advances.
    """
    started = parse_timestamp(borrowed_at)
    if started is None:
        return None
    now = parse_timestamp(now) or utcnow()
    elapsed_days = math.floor((now - started).total_seconds() / SECONDS_PER_DAY)
    return borrow_days - elapsed_days


class Book:
    """A book in a community's shared pool."""

    def __init__(self, id: int, title: str, community_id: int, author: Optional[str] = None,
                 image_url: Optional[str] = None, genre: Optional[str] = None,
                 current_holder_id: Optional[int] = None, borrowed_at: Optional[str] = None,
                 borrow_days: int = 14, initial_holder_id: Optional[int] = None,
                 pending_user_id: Optional[int] = None, created_at: Optional[str] = None,
                 updated_at: Optional[str] = None,
                 # Joined display fields
                 holder: Optional[Dict[str, Any]] = None, initial_holder: Optional[Dict[str, Any]] = None,
                 pending_user: Optional[Dict[str, Any]] = None, community: Optional[Dict[str, Any]] = None,
                 community_owner_id: Optional[int] = None) -> None:
        self.id = id
        self.title = title
        self.author = author
        self.image_url = image_url
        self.genre = genre
        self.community_id = community_id
        self.current_holder_id = current_holder_id
        self.borrowed_at = borrowed_at
        self.borrow_days = borrow_days
        self.initial_holder_id = initial_holder_id
        # Reserved for a transfer handshake; nothing writes it yet.
        self.pending_user_id = pending_user_id
        self.created_at = created_at
        self.updated_at = updated_at

        self.holder = holder
        self.initial_holder = initial_holder
        self.pending_user = pending_user
        self.community = community
        self.community_owner_id = community_owner_id
        self.last_history: Optional[BookHistory] = None

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author or 'Unknown Author'} (#{self.id})"

    @property
    def is_available(self) -> bool:
        return self.current_holder_id is None

    def days_remaining(self, now: Optional[datetime] = None) -> Optional[int]:
        if self.current_holder_id is None:
            return None
        return days_remaining(self.borrowed_at, self.borrow_days, now)

    def due_at(self) -> Optional[str]:
        started = parse_timestamp(self.borrowed_at)
        if self.current_holder_id is None or started is None:
            return None
        try:
            return (started + timedelta(days=self.borrow_days)).isoformat()
        except OverflowError:
            # Stored periods past the datetime range have no printable due date.
            return None

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        remaining = self.days_remaining(now)
        return remaining is not None and remaining < 0

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "image_url": self.image_url,
            "genre": self.genre,
            "community_id": self.community_id,
            "current_holder_id": self.current_holder_id,
            "borrowed_at": self.borrowed_at,
            "borrow_days": self.borrow_days,
            "initial_holder_id": self.initial_holder_id,
            "pending_user_id": self.pending_user_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "holder": self.holder,
            "initial_holder": self.initial_holder,
            "pending_user": self.pending_user,
            "community": self.community,
            "is_available": self.is_available,
            "days_remaining": self.days_remaining(now),
            "due_at": self.due_at(),
            "is_overdue": self.is_overdue(now),
        }
        if self.last_history is not None:
            data["last_history"] = self.last_history.to_dict()
        return data

    @staticmethod
    def from_row(row: Any) -> "Book":
        """Build a Book from a row of ``library.BOOK_SELECT``."""
        data = dict(row)

        def summary(prefix: str, *fields: str) -> Optional[Dict[str, Any]]:
            if data.get(f"{prefix}_id") is None:
                return None
            return {name: data.get(f"{prefix}_{name}") for name in ("id",) + fields}

        return Book(
            id=data["id"],
            title=data["title"],
            author=data.get("author"),
            image_url=data.get("image_url"),
            genre=data.get("genre"),
            community_id=data["community_id"],
            current_holder_id=data.get("current_holder_id"),
            borrowed_at=data.get("borrowed_at"),
            borrow_days=data.get("borrow_days") or 14,
            initial_holder_id=data.get("initial_holder_id"),
            pending_user_id=data.get("pending_user_id"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            holder=summary("holder", "name", "email", "phone"),
            initial_holder=summary("initial_holder", "name"),
            pending_user=summary("pending_user", "name"),
            community=summary("community", "name"),
            community_owner_id=data.get("community_owner_id"),
        )


class BookHistory:
    """One completed loan. Written once, at return time, and never changed."""

    def __init__(self, id: int, book_id: int, user_id: int, borrowed_at: str,
                 returned_at: Optional[str] = None, borrower: Optional[Dict[str, Any]] = None) -> None:
        self.id = id
        self.book_id = book_id
        self.user_id = user_id
        self.borrowed_at = borrowed_at
        self.returned_at = returned_at
        self.borrower = borrower

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "borrowed_at": self.borrowed_at,
            "returned_at": self.returned_at,
            "borrower": self.borrower,
        }

    @staticmethod
    def from_row(row: Any) -> "BookHistory":
        data = dict(row)
        borrower = None
        if data.get("borrower_id") is not None:
            borrower = {"id": data["borrower_id"], "name": data.get("borrower_name"), "phone": data.get("borrower_phone")}
        return BookHistory(
            id=data["id"],
            book_id=data["book_id"],
            user_id=data["user_id"],
            borrowed_at=data["borrowed_at"],
            returned_at=data.get("returned_at"),
            borrower=borrower,
        )
