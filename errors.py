"""Error taxonomy shared by every service.

Services raise these exceptions before touching the database; the HTTP layer
turns them into ``{"detail": ..., "code": ...}`` responses using the
``status_code`` carried by each class.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Callable, Optional


class ServiceError(Exception):
    """Base class for expected, user-facing failures."""

    code = "error"
    status_code = 400
    default_message = "The request could not be completed."

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class NotFound(ServiceError):
    code = "not_found"
    status_code = 404
    default_message = "Not found."


class Forbidden(ServiceError):
    code = "forbidden"
    status_code = 403
    default_message = "You are not allowed to do this."


class ValidationError(ServiceError):
    code = "validation_error"
    default_message = "Invalid input."


class AlreadyBorrowed(ServiceError):
    code = "already_borrowed"

    def __init__(self, holder: Optional[str] = None) -> None:
        self.holder = holder
        super().__init__(f"This book is currently held by {holder}." if holder else "This book is already borrowed.")


class AlreadyHoldingBook(ServiceError):
    code = "already_holding_book"

    def __init__(self, title: str) -> None:
        self.title = title
        super().__init__(f'You already hold "{title}". Return it first.')


class AlreadyMember(ServiceError):
    code = "already_member"
    default_message = "You already belong to a community."


class NotMember(ServiceError):
    code = "not_member"
    default_message = "You are not a member of any community."


class NotHolder(ServiceError):
    code = "not_holder"
    status_code = 403
    default_message = "You do not hold this book."


class HasActiveLoan(ServiceError):
    code = "has_active_loan"

    def __init__(self, title: str, message: Optional[str] = None) -> None:
        self.title = title
        super().__init__(message or f'"{title}" must be returned first.')


class DuplicateAccessCode(ServiceError):
    code = "duplicate_access_code"
    default_message = "Another community already uses this access code."


class InvalidAccessCode(ServiceError):
    code = "invalid_access_code"
    default_message = "Access code is too short."


class InvalidCode(ServiceError):
    code = "invalid_code"
    status_code = 404
    default_message = "Wrong code. No community found."


class CannotRemoveOwner(ServiceError):
    code = "cannot_remove_owner"
    default_message = "The community owner cannot be removed."


class WrongCommunity(ServiceError):
    code = "wrong_community"
    status_code = 403
    default_message = "This book belongs to another community."


class EmailTaken(ServiceError):
    code = "email_taken"
    default_message = "This email is already registered."


class InvalidCredentials(ServiceError):
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid email or password."


class AuthenticationError(ServiceError):
    code = "not_authenticated"
    status_code = 401
    default_message = "Invalid or expired token."


def log_refusals(func: Callable) -> Callable:
    """Log a refused state change at WARNING with its error code, then re-raise."""
    log = logging.getLogger(func.__module__)

    @wraps(func)
    def wrapper(self, actor, *args, **kwargs):
        try:
            return func(self, actor, *args, **kwargs)
        except ServiceError as e:
            log.warning(f"{func.__name__} by user {getattr(actor, 'id', None)} refused: {e.code} ({e.message})")
            raise

    return wrapper
