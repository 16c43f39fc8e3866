import logging
import sqlite3
from datetime import datetime
from typing import Callable, List, Optional, Tuple

import security
from book import utcnow
from database import get_db_connection, transaction
from errors import (
    AuthenticationError,
    EmailTaken,
    Forbidden,
    HasActiveLoan,
    InvalidCredentials,
    NotFound,
    ValidationError,
    log_refusals,
)
from permissions import require_admin
from user import ROLE_ADMIN, ROLE_USER, ROLES, User
from utils.validators import EmailValidator, PhoneValidator, TextValidator

logger = logging.getLogger(__name__)

USER_SELECT = """
    SELECT u.id, u.name, u.email, u.phone, u.password, u.role, u.community_id,
           u.created_at, u.updated_at,
           c.name AS community_name, c.access_code AS community_access_code
    FROM users u
    LEFT JOIN communities c ON c.id = u.community_id
"""


def fetch_user(conn: sqlite3.Connection, user_id: int) -> Optional[User]:
    row = conn.execute(USER_SELECT + " WHERE u.id = ?", (user_id,)).fetchone()
    return User.from_row(row) if row else None


def fetch_held_book(conn: sqlite3.Connection, user_id: int) -> Optional[sqlite3.Row]:
    """The book a user currently holds, if any."""
    return conn.execute(
        "SELECT id, title FROM books WHERE current_holder_id = ? ORDER BY id LIMIT 1", (user_id,)
    ).fetchone()


class Accounts:
    """Registration, login and user administration."""

    def __init__(self, db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db_file = db_file
        self._now = clock or utcnow

    # ------------------------- Sessions ------------------------- #
    def register(self, name: str, email: str, password: str, phone: Optional[str] = None,
                 community_id: Optional[int] = None) -> User:
        return self._create_user(name, email, password, phone=phone, role=ROLE_USER, community_id=community_id)

    def login(self, email: str, password: str) -> Tuple[str, User]:
        """Check credentials and issue a session token."""
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(USER_SELECT + " WHERE u.email = ?", (EmailValidator.normalize(email),)).fetchone()
        finally:
            conn.close()
        user = User.from_row(row) if row else None
        if user is None or not security.verify_password(password or "", user.password):
            logger.warning(f"Failed login for {email!r}")
            raise InvalidCredentials()
        return security.issue_token(user.id, now=self._now()), user

    def authenticate(self, token: Optional[str]) -> User:
        """Resolve a bearer token to its user."""
        user_id = security.verify_token(token or "", now=self._now())
        if user_id is None:
            raise AuthenticationError()
        user = self.get_user(user_id)
        if user is None:
            raise AuthenticationError("User no longer exists.")
        return user

    # ------------------------- Reads ------------------------- #
    def get_user(self, user_id: int) -> Optional[User]:
        conn = get_db_connection(self.db_file)
        try:
            return fetch_user(conn, user_id)
        finally:
            conn.close()

    def list_users(self, actor: User) -> List[User]:
        require_admin(actor, "Only an administrator can list users.")
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(USER_SELECT + " ORDER BY u.id").fetchall()
            return [User.from_row(row) for row in rows]
        finally:
            conn.close()

    def search_users(self, actor: User, phone: str) -> List[User]:
        """Admin lookup by phone number, ignoring formatting."""
        require_admin(actor, "Only an administrator can search users.")
        digits = PhoneValidator.normalize_phone(phone)
        if len(digits) < 3:
            raise ValidationError("Enter at least 3 digits of the phone number.")
        return [u for u in self.list_users(actor) if digits in PhoneValidator.normalize_phone(u.phone)]

    # ------------------------- Administration ------------------------- #
    def add_user(self, actor: User, name: str, email: str, password: str, phone: Optional[str] = None,
                 role: str = ROLE_USER, community_id: Optional[int] = None) -> User:
        require_admin(actor)
        role = (role or ROLE_USER).lower()
        if role not in ROLES:
            raise ValidationError(f"Unknown role: {role}")
        if role == ROLE_ADMIN:
            community_id = None
        return self._create_user(name, email, password, phone=phone, role=role, community_id=community_id)

    def ensure_admin(self, name: str, email: str, password: str) -> Tuple[User, bool]:
        """Find or create the administrator account. Returns (user, created)."""
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(USER_SELECT + " WHERE u.email = ?", (EmailValidator.normalize(email),)).fetchone()
        finally:
            conn.close()
        if row:
            return User.from_row(row), False
        return self._create_user(name, email, password, role=ROLE_ADMIN), True

    @log_refusals
    def delete_user(self, actor: User, user_id: int) -> User:
        with transaction(self.db_file) as conn:
            target = fetch_user(conn, user_id)
            if target is None:
                raise NotFound("User not found.")
            if target.is_admin:
                raise Forbidden("An administrator account cannot be deleted.")
            if not actor.is_admin and actor.id != target.id:
                raise Forbidden("You can only delete your own account.")
            held = fetch_held_book(conn, target.id)
            if held:
                raise HasActiveLoan(held["title"], f'"{held["title"]}" must be returned before the account is deleted.')
            conn.execute("DELETE FROM users WHERE id = ?", (target.id,))
        logger.info(f"User {target.id} deleted by user {actor.id}")
        return target

    @log_refusals
    def update_profile(self, actor: User, name: Optional[str] = None, email: Optional[str] = None,
                       phone: Optional[str] = None) -> User:
        name = TextValidator.clean(name)
        email = TextValidator.clean(email)
        phone = TextValidator.clean(phone)
        with transaction(self.db_file) as conn:
            user = fetch_user(conn, actor.id)
            if user is None:
                raise NotFound("User not found.")
            if email is not None:
                if not EmailValidator.is_valid_email(email):
                    raise ValidationError("Enter a valid email address.")
                email = EmailValidator.normalize(email)
                if email != user.email:
                    taken = conn.execute("SELECT 1 FROM users WHERE email = ? AND id != ?", (email, user.id)).fetchone()
                    if taken:
                        raise EmailTaken()
            conn.execute(
                "UPDATE users SET name = ?, email = ?, phone = ?, updated_at = ? WHERE id = ?",
                (name or user.name, email or user.email, phone if phone is not None else user.phone,
                 self._now().isoformat(), user.id),
            )
            updated = fetch_user(conn, user.id)
        logger.info(f"User {actor.id} updated their profile")
        return updated

    # ------------------------- Helpers ------------------------- #
    def _create_user(self, name: str, email: str, password: str, phone: Optional[str] = None,
                     role: str = ROLE_USER, community_id: Optional[int] = None) -> User:
        name = TextValidator.clean(name)
        if not name or not TextValidator.clean(email) or not password:
            raise ValidationError("Name, email and password are required.")
        if not EmailValidator.is_valid_email(email):
            raise ValidationError("Enter a valid email address.")
        email = EmailValidator.normalize(email)
        now = self._now().isoformat()
        digest = security.hash_password(password)
        with transaction(self.db_file) as conn:
            if conn.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone():
                raise EmailTaken()
            if community_id is not None:
                if not conn.execute("SELECT 1 FROM communities WHERE id = ?", (community_id,)).fetchone():
                    raise NotFound("Community not found.")
            try:
                cursor = conn.execute(
                    "INSERT INTO users (name, email, phone, password, role, community_id, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (name, email, TextValidator.clean(phone) or "", digest, role, community_id, now, now),
                )
            except sqlite3.IntegrityError as e:
                raise EmailTaken() from e
            user = fetch_user(conn, cursor.lastrowid)
        logger.info(f"User {user.id} registered with role {role}")
        return user
