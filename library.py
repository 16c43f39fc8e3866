import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from accounts import fetch_held_book, fetch_user
from book import Book, BookHistory, utcnow
from communities import fetch_community
from config import settings
from database import get_db_connection, transaction
from errors import (
    AlreadyBorrowed,
    AlreadyHoldingBook,
    Forbidden,
    NotFound,
    NotHolder,
    ValidationError,
    WrongCommunity,
    log_refusals,
)
from message import CHAT
from notifications import insert_message
from permissions import require_admin, require_manage
from user import User
from utils.validators import TextValidator

logger = logging.getLogger(__name__)

BOOK_SELECT = """
    SELECT b.id, b.title, b.author, b.image_url, b.genre, b.community_id, b.current_holder_id,
           b.borrowed_at, b.borrow_days, b.initial_holder_id, b.pending_user_id,
           b.created_at, b.updated_at,
           h.id AS holder_id, h.name AS holder_name, h.email AS holder_email, h.phone AS holder_phone,
           i.id AS initial_holder_id, i.name AS initial_holder_name,
           p.id AS pending_user_id, p.name AS pending_user_name,
           c.name AS community_name, c.owner_id AS community_owner_id
    FROM books b
    LEFT JOIN users h ON h.id = b.current_holder_id
    LEFT JOIN users i ON i.id = b.initial_holder_id
    LEFT JOIN users p ON p.id = b.pending_user_id
    LEFT JOIN communities c ON c.id = b.community_id
"""

HISTORY_SELECT = """
    SELECT bh.id, bh.book_id, bh.user_id, bh.borrowed_at, bh.returned_at,
           u.id AS borrower_id, u.name AS borrower_name, u.phone AS borrower_phone
    FROM book_histories bh
    LEFT JOIN users u ON u.id = bh.user_id
"""


def fetch_book(conn: sqlite3.Connection, book_id: int) -> Optional[Book]:
    row = conn.execute(BOOK_SELECT + " WHERE b.id = ?", (book_id,)).fetchone()
    return Book.from_row(row) if row else None


class Library:
    """Book catalog and the lending transitions: borrow, return, assign, admin return.

    Each transition runs in a single ``BEGIN IMMEDIATE`` transaction and changes
    the holder with a conditional update, so two concurrent borrows of one book
    cannot both succeed.
    """

    def __init__(self, db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db_file = db_file
        self._now = clock or utcnow

    # ------------------------- Catalog ------------------------- #
    @log_refusals
    def add_book(self, actor: User, community_id: int, title: str, author: Optional[str] = None,
                 borrow_days: Optional[int] = None, genre: Optional[str] = None,
                 image_url: Optional[str] = None, initial_holder_id: Optional[int] = None) -> Book:
        """Add a book to a community. Admins and the community owner only."""
        title = TextValidator.clean(title)
        with transaction(self.db_file) as conn:
            community = fetch_community(conn, community_id)
            if community is None:
                raise NotFound("Community not found.")
            require_manage(actor, community, "Only the community owner can add books.")
            if not title:
                raise ValidationError("Title is required.")
            if initial_holder_id is not None and fetch_user(conn, initial_holder_id) is None:
                raise NotFound("Initial holder not found.")
            if borrow_days is None or borrow_days < 1:
                borrow_days = settings.default_borrow_days
            if borrow_days > settings.max_borrow_days:
                raise ValidationError(f"Borrow period cannot exceed {settings.max_borrow_days} days.")
            now = self._now().isoformat()
            cursor = conn.execute(
                "INSERT INTO books (title, author, image_url, genre, community_id, borrow_days, "
                "initial_holder_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (title, TextValidator.clean(author), TextValidator.clean(image_url), TextValidator.clean(genre),
                 community.id, borrow_days, initial_holder_id, now, now),
            )
            book = fetch_book(conn, cursor.lastrowid)
        logger.info(f"Book {book.id} ({book.title!r}) added to community {community_id} by user {actor.id}")
        return book

    @log_refusals
    def delete_book(self, actor: User, book_id: int) -> Book:
        """Hard delete. History rows and messages about the book go with it."""
        with transaction(self.db_file) as conn:
            book = fetch_book(conn, book_id)
            if book is None:
                raise NotFound("Book not found.")
            require_manage(actor, book, "Only the community owner can delete books.")
            conn.execute("DELETE FROM books WHERE id = ?", (book.id,))
        logger.info(f"Book {book_id} deleted by user {actor.id}")
        return book

    def get_book(self, actor: User, book_id: int) -> Book:
        conn = get_db_connection(self.db_file)
        try:
            book = fetch_book(conn, book_id)
        finally:
            conn.close()
        if book is None:
            raise NotFound("Book not found.")
        if not actor.is_admin and book.community_id != actor.community_id:
            raise Forbidden("This book belongs to another community.")
        return book

    def list_books(self, actor: User) -> List[Book]:
        """Admins see every book, everyone else the books of their own community."""
        if actor.is_admin:
            return self.all_books()
        if actor.community_id is None:
            return []
        return self._select_books(" WHERE b.community_id = ? ORDER BY b.id", (actor.community_id,))

    def all_books(self) -> List[Book]:
        return self._select_books(" ORDER BY b.id")

    def list_books_by_community(self, actor: User, community_id: int) -> List[Book]:
        """Books of one community, each with its most recent history row."""
        if not actor.is_admin and actor.community_id != community_id:
            raise Forbidden("You cannot see the books of another community.")
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(BOOK_SELECT + " WHERE b.community_id = ? ORDER BY b.id", (community_id,)).fetchall()
            books = [Book.from_row(row) for row in rows]
            for book in books:
                last = conn.execute(
                    HISTORY_SELECT + " WHERE bh.book_id = ? ORDER BY bh.returned_at DESC, bh.id DESC LIMIT 1",
                    (book.id,),
                ).fetchone()
                book.last_history = BookHistory.from_row(last) if last else None
            return books
        finally:
            conn.close()

    def book_history(self, actor: User, book_id: int) -> List[BookHistory]:
        conn = get_db_connection(self.db_file)
        try:
            book = fetch_book(conn, book_id)
            if book is None:
                raise NotFound("Book not found.")
            require_manage(actor, book, "Only the community owner can see a book's history.")
            rows = conn.execute(
                HISTORY_SELECT + " WHERE bh.book_id = ? ORDER BY bh.returned_at DESC, bh.id DESC", (book.id,)
            ).fetchall()
            return [BookHistory.from_row(row) for row in rows]
        finally:
            conn.close()

    # ------------------------- Lending ------------------------- #
    @log_refusals
    def borrow(self, actor: User, book_id: int) -> Book:
        """Take an available book. A user may hold only one book at a time."""
        with transaction(self.db_file) as conn:
            user = fetch_user(conn, actor.id)
            if user is None:
                raise NotFound("User not found.")
            held = fetch_held_book(conn, user.id)
            if held:
                raise AlreadyHoldingBook(held["title"])
            book = fetch_book(conn, book_id)
            if book is None:
                raise NotFound("Book not found.")
            if book.current_holder_id is not None:
                raise AlreadyBorrowed(book.holder["name"] if book.holder else None)
            if not user.is_admin and book.community_id != user.community_id:
                raise WrongCommunity()
            self._set_holder(conn, book, user.id)
            book = fetch_book(conn, book.id)
        logger.info(f"Book {book.id} borrowed by user {user.id}")
        return book

    @log_refusals
    def return_my_book(self, actor: User, book_id: int) -> Book:
        """Give a book back and record the completed loan."""
        with transaction(self.db_file) as conn:
            book = fetch_book(conn, book_id)
            if book is None:
                raise NotFound("Book not found.")
            if book.current_holder_id != actor.id:
                raise NotHolder()
            now = self._now().isoformat()
            # History first: it needs borrowed_at before the holder is cleared.
            conn.execute(
                "INSERT INTO book_histories (book_id, user_id, borrowed_at, returned_at) VALUES (?, ?, ?, ?)",
                (book.id, actor.id, book.borrowed_at or now, now),
            )
            cursor = conn.execute(
                "UPDATE books SET current_holder_id = NULL, borrowed_at = NULL, updated_at = ? "
                "WHERE id = ? AND current_holder_id = ?",
                (now, book.id, actor.id),
            )
            if cursor.rowcount != 1:
                raise NotHolder()
            book = fetch_book(conn, book.id)
        logger.info(f"Book {book.id} returned by user {actor.id}")
        return book

    @log_refusals
    def assign(self, actor: User, book_id: int, user_id: int) -> Book:
        """Administrative hand-out. Skips the one-book and community checks and writes no history."""
        require_admin(actor)
        with transaction(self.db_file) as conn:
            book = fetch_book(conn, book_id)
            if book is None:
                raise NotFound("Book not found.")
            user = fetch_user(conn, user_id)
            if user is None:
                raise NotFound("User not found.")
            now = self._now().isoformat()
            conn.execute(
                "UPDATE books SET current_holder_id = ?, borrowed_at = ?, updated_at = ? WHERE id = ?",
                (user.id, now, now, book.id),
            )
            if user.id != actor.id:
                insert_message(conn, actor.id, user.id, book.id, CHAT,
                               f'An administrator assigned "{book.title}" to you.', now)
            book = fetch_book(conn, book.id)
        logger.info(f"Book {book.id} assigned to user {user_id} by admin {actor.id}")
        return book

    @log_refusals
    def admin_return(self, actor: User, book_id: int) -> Book:
        """Administrative return. Clears the holder without writing history."""
        require_admin(actor)
        with transaction(self.db_file) as conn:
            book = fetch_book(conn, book_id)
            if book is None:
                raise NotFound("Book not found.")
            previous_holder_id = book.current_holder_id
            now = self._now().isoformat()
            conn.execute(
                "UPDATE books SET current_holder_id = NULL, borrowed_at = NULL, updated_at = ? WHERE id = ?",
                (now, book.id),
            )
            if previous_holder_id is not None and previous_holder_id != actor.id:
                insert_message(conn, actor.id, previous_holder_id, book.id, CHAT,
                               f'An administrator marked "{book.title}" as returned.', now)
            book = fetch_book(conn, book.id)
        logger.info(f"Book {book.id} returned by admin {actor.id} (previous holder: {previous_holder_id})")
        return book

    # ------------------------- Reporting ------------------------- #
    def overdue_books(self, now: Optional[datetime] = None) -> List[Book]:
        now = now or self._now()
        borrowed = self._select_books(" WHERE b.current_holder_id IS NOT NULL ORDER BY b.borrowed_at")
        return [book for book in borrowed if book.is_overdue(now)]

    def get_statistics(self) -> Dict[str, Any]:
        """Get lending statistics."""
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM books")
            total_books = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM books WHERE current_holder_id IS NOT NULL")
            borrowed_books = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM communities")
            communities = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM users")
            users = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM book_histories")
            completed_loans = cursor.fetchone()[0]
        finally:
            conn.close()

        return {
            "total_books": total_books,
            "borrowed_books": borrowed_books,
            "available_books": total_books - borrowed_books,
            "overdue_books": len(self.overdue_books()),
            "communities": communities,
            "users": users,
            "completed_loans": completed_loans,
        }

    # ------------------------- Helpers ------------------------- #
    def _select_books(self, clause: str, params: tuple = ()) -> List[Book]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(BOOK_SELECT + clause, params).fetchall()
            return [Book.from_row(row) for row in rows]
        finally:
            conn.close()

    def _set_holder(self, conn: sqlite3.Connection, book: Book, user_id: int) -> None:
        now = self._now().isoformat()
        cursor = conn.execute(
            "UPDATE books SET current_holder_id = ?, borrowed_at = ?, updated_at = ? "
            "WHERE id = ? AND current_holder_id IS NULL",
            (user_id, now, now, book.id),
        )
        if cursor.rowcount != 1:
            raise AlreadyBorrowed()
