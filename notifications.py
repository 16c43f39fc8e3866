import logging
import sqlite3
from datetime import datetime
from typing import Callable, List, Optional

from book import utcnow
from database import get_db_connection, transaction
from errors import Forbidden, NotFound, ValidationError
from message import MESSAGE_TYPES, Message
from user import User

logger = logging.getLogger(__name__)

MESSAGE_SELECT = """
    SELECT m.id, m.from_user_id, m.to_user_id, m.book_id, m.message_type, m.content,
           m.is_read, m.transfer_code, m.created_at,
           f.name AS from_user_name, b.title AS book_title
    FROM messages m
    LEFT JOIN users f ON f.id = m.from_user_id
    LEFT JOIN books b ON b.id = m.book_id
"""


def insert_message(conn: sqlite3.Connection, from_user_id: int, to_user_id: int, book_id: int,
                   message_type: str, content: str, created_at: str,
                   transfer_code: Optional[str] = None) -> int:
    """Append a message inside the caller's transaction."""
    if message_type not in MESSAGE_TYPES:
        raise ValidationError(f"Unknown message type: {message_type}")
    if not content or not content.strip():
        raise ValidationError("Message content is required.")
    cursor = conn.execute(
        "INSERT INTO messages (from_user_id, to_user_id, book_id, message_type, content, is_read, transfer_code, created_at) "
        "VALUES (?, ?, ?, ?, ?, 0, ?, ?)",
        (from_user_id, to_user_id, book_id, message_type, content.strip(), transfer_code, created_at),
    )
    return cursor.lastrowid


class Mailbox:
    """Per-recipient notifications. Messages are only ever marked as read."""

    def __init__(self, db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db_file = db_file
        self._now = clock or utcnow

    def post(self, from_user_id: int, to_user_id: int, book_id: int, message_type: str, content: str,
             transfer_code: Optional[str] = None) -> Message:
        with transaction(self.db_file) as conn:
            for user_id in (from_user_id, to_user_id):
                if not conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone():
                    raise NotFound("User not found.")
            if not conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone():
                raise NotFound("Book not found.")
            message_id = insert_message(conn, from_user_id, to_user_id, book_id, message_type, content,
                                        self._now().isoformat(), transfer_code)
            row = conn.execute(MESSAGE_SELECT + " WHERE m.id = ?", (message_id,)).fetchone()
        return Message.from_row(row)

    def get_my_messages(self, actor: User) -> List[Message]:
        """Messages addressed to the actor, newest first."""
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                MESSAGE_SELECT + " WHERE m.to_user_id = ? ORDER BY m.created_at DESC, m.id DESC",
                (actor.id,),
            ).fetchall()
            return [Message.from_row(row) for row in rows]
        finally:
            conn.close()

    def mark_as_read(self, actor: User, message_id: int) -> Message:
        with transaction(self.db_file) as conn:
            row = conn.execute(MESSAGE_SELECT + " WHERE m.id = ?", (message_id,)).fetchone()
            if row is None:
                raise NotFound("Message not found.")
            if row["to_user_id"] != actor.id:
                raise Forbidden("This message is not addressed to you.")
            conn.execute("UPDATE messages SET is_read = 1 WHERE id = ?", (message_id,))
            row = conn.execute(MESSAGE_SELECT + " WHERE m.id = ?", (message_id,)).fetchone()
        logger.debug(f"Message {message_id} marked as read by user {actor.id}")
        return Message.from_row(row)

    def get_unread_count(self, actor: User) -> int:
        conn = get_db_connection(self.db_file)
        try:
            return conn.execute(
                "SELECT COUNT(*) FROM messages WHERE to_user_id = ? AND is_read = 0", (actor.id,)
            ).fetchone()[0]
        finally:
            conn.close()
