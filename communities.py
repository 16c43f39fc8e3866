import logging
import sqlite3
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from accounts import fetch_held_book, fetch_user
from book import utcnow
from community import Community
from config import settings
from database import get_db_connection, transaction
from errors import (
    AlreadyMember,
    CannotRemoveOwner,
    DuplicateAccessCode,
    HasActiveLoan,
    InvalidAccessCode,
    InvalidCode,
    NotFound,
    NotMember,
    ValidationError,
    log_refusals,
)
from permissions import require_admin, require_manage
from user import User
from utils.validators import AccessCodeValidator, TextValidator

logger = logging.getLogger(__name__)

COMMUNITY_SELECT = """
    SELECT c.id, c.name, c.description, c.access_code, c.owner_id, c.created_at, c.updated_at,
           o.name AS owner_name, o.email AS owner_email,
           (SELECT COUNT(*) FROM users m WHERE m.community_id = c.id) AS member_count,
           (SELECT COUNT(*) FROM books b WHERE b.community_id = c.id) AS book_count
    FROM communities c
    LEFT JOIN users o ON o.id = c.owner_id
"""


def fetch_community(conn: sqlite3.Connection, community_id: int) -> Optional[Community]:
    row = conn.execute(COMMUNITY_SELECT + " WHERE c.id = ?", (community_id,)).fetchone()
    return Community.from_row(row) if row else None


class Communities:
    """Community ownership and membership rules."""

    def __init__(self, db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db_file = db_file
        self._now = clock or utcnow

    # ------------------------- Creation ------------------------- #
    @log_refusals
    def create_community(self, actor: User, name: str, access_code: str,
                         description: Optional[str] = None) -> Tuple[Community, User]:
        """Self-service creation: the creator becomes owner and joins immediately."""
        with transaction(self.db_file) as conn:
            user = fetch_user(conn, actor.id)
            if user is None:
                raise NotFound("User not found.")
            if user.community_id is not None:
                raise AlreadyMember("Leave your current community before creating a new one.")
            community_id = self._insert(conn, name, access_code, description, owner_id=user.id)
            conn.execute(
                "UPDATE users SET community_id = ?, updated_at = ? WHERE id = ?",
                (community_id, self._now().isoformat(), user.id),
            )
            community = fetch_community(conn, community_id)
            user = fetch_user(conn, user.id)
        logger.info(f"Community {community.id} ({community.access_code}) created by user {actor.id}")
        return community, user

    @log_refusals
    def add_community(self, actor: User, name: str, access_code: str, description: Optional[str] = None) -> Community:
        """Administrative creation of a legacy community without an owner."""
        require_admin(actor)
        with transaction(self.db_file) as conn:
            community_id = self._insert(conn, name, access_code, description, owner_id=None)
            community = fetch_community(conn, community_id)
        logger.info(f"Legacy community {community.id} ({community.access_code}) added by admin {actor.id}")
        return community

    # ------------------------- Membership ------------------------- #
    @log_refusals
    def join_community(self, actor: User, access_code: str) -> User:
        code = AccessCodeValidator.normalize(access_code)
        with transaction(self.db_file) as conn:
            user = fetch_user(conn, actor.id)
            if user is None:
                raise NotFound("User not found.")
            if user.community_id is not None:
                raise AlreadyMember()
            row = conn.execute("SELECT id FROM communities WHERE access_code = ?", (code,)).fetchone()
            if row is None or not code:
                raise InvalidCode()
            conn.execute(
                "UPDATE users SET community_id = ?, updated_at = ? WHERE id = ? AND community_id IS NULL",
                (row["id"], self._now().isoformat(), user.id),
            )
            user = fetch_user(conn, user.id)
        logger.info(f"User {actor.id} joined community {user.community_id}")
        return user

    @log_refusals
    def leave_community(self, actor: User) -> User:
        with transaction(self.db_file) as conn:
            user = fetch_user(conn, actor.id)
            if user is None:
                raise NotFound("User not found.")
            if user.community_id is None:
                raise NotMember()
            held = fetch_held_book(conn, user.id)
            if held:
                raise HasActiveLoan(held["title"], f'Return "{held["title"]}" before leaving the community.')
            left = user.community_id
            conn.execute(
                "UPDATE users SET community_id = NULL, updated_at = ? WHERE id = ?",
                (self._now().isoformat(), user.id),
            )
            user = fetch_user(conn, user.id)
        logger.info(f"User {actor.id} left community {left}")
        return user

    @log_refusals
    def remove_member(self, actor: User, community_id: int, user_id: int) -> User:
        with transaction(self.db_file) as conn:
            community = fetch_community(conn, community_id)
            if community is None:
                raise NotFound("Community not found.")
            require_manage(actor, community, "Only the community owner can remove members.")
            target = fetch_user(conn, user_id)
            if target is None or target.community_id != community.id:
                raise NotFound("This user is not a member of the community.")
            if target.id == community.owner_id:
                raise CannotRemoveOwner()
            held = fetch_held_book(conn, target.id)
            if held:
                raise HasActiveLoan(held["title"], f'{target.name} must return "{held["title"]}" first.')
            conn.execute(
                "UPDATE users SET community_id = NULL, updated_at = ? WHERE id = ?",
                (self._now().isoformat(), target.id),
            )
            target = fetch_user(conn, target.id)
        logger.info(f"User {user_id} removed from community {community_id} by user {actor.id}")
        return target

    # ------------------------- Deletion ------------------------- #
    @log_refusals
    def delete_community(self, actor: User, community_id: int) -> Community:
        """Delete a community with its books, detaching its members.

        Refused while any of its books is on loan or any member holds a book,
        the same rule that guards leaving and member removal.
        """
        with transaction(self.db_file) as conn:
            community = fetch_community(conn, community_id)
            if community is None:
                raise NotFound("Community not found.")
            require_manage(actor, community, "You cannot delete this community.")
            loaned = conn.execute(
                """
                SELECT b.title FROM books b
                WHERE b.current_holder_id IS NOT NULL
                  AND (b.community_id = ?
                       OR b.current_holder_id IN (SELECT id FROM users WHERE community_id = ?))
                ORDER BY b.id LIMIT 1
                """,
                (community.id, community.id),
            ).fetchone()
            if loaned:
                raise HasActiveLoan(
                    loaned["title"], f'"{loaned["title"]}" is still on loan. Every book must be returned first.'
                )
            conn.execute("DELETE FROM communities WHERE id = ?", (community.id,))
        logger.info(f"Community {community_id} deleted by user {actor.id}")
        return community

    # ------------------------- Reads ------------------------- #
    def get_community(self, community_id: int) -> Optional[Community]:
        conn = get_db_connection(self.db_file)
        try:
            return fetch_community(conn, community_id)
        finally:
            conn.close()

    def list_communities(self, actor: User) -> List[Community]:
        """Administrators see every community, everyone else the ones they own."""
        if actor.is_admin:
            return self.all_communities()
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(COMMUNITY_SELECT + " WHERE c.owner_id = ? ORDER BY c.id", (actor.id,)).fetchall()
            return [Community.from_row(row) for row in rows]
        finally:
            conn.close()

    def all_communities(self) -> List[Community]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(COMMUNITY_SELECT + " ORDER BY c.id").fetchall()
            return [Community.from_row(row) for row in rows]
        finally:
            conn.close()

    def list_public_communities(self) -> List[Community]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(COMMUNITY_SELECT + " ORDER BY c.name").fetchall()
            return [Community.from_row(row) for row in rows]
        finally:
            conn.close()

    def list_members(self, actor: User, community_id: int) -> List[User]:
        conn = get_db_connection(self.db_file)
        try:
            community = fetch_community(conn, community_id)
            if community is None:
                raise NotFound("Community not found.")
            require_manage(actor, community, "Only the community owner can see its members.")
            rows = conn.execute(
                "SELECT id, name, email, phone, role, community_id, created_at, updated_at "
                "FROM users WHERE community_id = ? ORDER BY id",
                (community.id,),
            ).fetchall()
            return [User.from_row(row) for row in rows]
        finally:
            conn.close()

    # ------------------------- Helpers ------------------------- #
    def _insert(self, conn: sqlite3.Connection, name: str, access_code: str,
                description: Optional[str], owner_id: Optional[int]) -> int:
        name = TextValidator.clean(name)
        code = AccessCodeValidator.normalize(access_code)
        if not name or not code:
            raise ValidationError("Name and access code are required.")
        if not AccessCodeValidator.is_valid(code):
            raise InvalidAccessCode(
                f"Access code must be at least {settings.min_access_code_length} characters long."
            )
        if conn.execute("SELECT 1 FROM communities WHERE access_code = ?", (code,)).fetchone():
            raise DuplicateAccessCode()
        now = self._now().isoformat()
        try:
            cursor = conn.execute(
                "INSERT INTO communities (name, description, access_code, owner_id, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (name, TextValidator.clean(description) or "", code, owner_id, now, now),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateAccessCode() from e
        return cursor.lastrowid
