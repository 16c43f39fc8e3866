import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from config import settings

logger = logging.getLogger(__name__)

# Default database file. Services accept their own ``db_file`` and fall back to this.
DATABASE_FILE = settings.database_file

TABLES = ("messages", "book_histories", "books", "users", "communities")

# SQLite stores INTEGER keys as signed 64-bit values.
MAX_ROW_ID = 2 ** 63 - 1


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database in autocommit mode.

    Writes are expected to go through ``transaction()``, which opens an explicit
    ``BEGIN IMMEDIATE`` so that a check and the write it guards are atomic.
    """
    conn = sqlite3.connect(db_file or DATABASE_FILE, isolation_level=None, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run a unit of work under a write lock; commit on success, roll back on error."""
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS communities (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                access_code TEXT NOT NULL UNIQUE,
                owner_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                phone TEXT NOT NULL DEFAULT '',
                password TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'user' CHECK(role IN ('admin', 'user')),
                community_id INTEGER REFERENCES communities(id) ON DELETE SET NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT,
                image_url TEXT,
                genre TEXT,
                community_id INTEGER NOT NULL REFERENCES communities(id) ON DELETE CASCADE,
                current_holder_id INTEGER REFERENCES users(id),
                borrowed_at TEXT,
                borrow_days INTEGER NOT NULL DEFAULT 14,
                initial_holder_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                pending_user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # One row per completed loan, written at return time.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS book_histories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE CASCADE,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                borrowed_at TEXT NOT NULL,
                returned_at TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                from_user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                to_user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE CASCADE,
                message_type TEXT NOT NULL CHECK(message_type IN ('transfer_request', 'transfer_code', 'chat')),
                content TEXT NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                transfer_code TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_users_community_id ON users(community_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_communities_owner_id ON communities(owner_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_community_id ON books(community_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_current_holder_id ON books(current_holder_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_histories_book_id ON book_histories(book_id, returned_at DESC)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_histories_user_id ON book_histories(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_messages_to_user_id ON messages(to_user_id, is_read)")
    finally:
        conn.close()


def drop_tables(db_file: Optional[str] = None) -> None:
    """Drop every table. All data is lost."""
    conn = get_db_connection(db_file)
    try:
        conn.execute("PRAGMA foreign_keys = OFF;")
        for table in TABLES:
            conn.execute(f"DROP TABLE IF EXISTS {table}")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
    logger.debug(f"Database ready at {os.path.abspath(db_file or DATABASE_FILE)}")


def reset_database(db_file: Optional[str] = None) -> None:
    """Drop and recreate every table."""
    drop_tables(db_file)
    create_tables(db_file)
    logger.warning(f"Database reset at {os.path.abspath(db_file or DATABASE_FILE)}")
