"""Password digests and signed session tokens.

Tokens have the shape ``<user_id>|<expiry>|<signature>`` where the signature is
an HMAC-SHA256 of the first two parts keyed with ``settings.secret_key``.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from config import settings

logger = logging.getLogger(__name__)

_ALGORITHM = "pbkdf2_sha256"


def hash_password(password: str, iterations: Optional[int] = None) -> str:
    iterations = iterations or settings.password_iterations
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"{_ALGORITHM}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, hashed: str) -> bool:
    try:
        algorithm, iterations, salt, expected = hashed.split("$")
    except (AttributeError, ValueError):
        return False
    if algorithm != _ALGORITHM:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


def _sign(payload: str) -> str:
    return hmac.new(settings.secret_key.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def issue_token(user_id: int, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    expiry = int((now + timedelta(hours=settings.token_ttl_hours)).timestamp())
    payload = f"{user_id}|{expiry}"
    return f"{payload}|{_sign(payload)}"


def verify_token(token: str, now: Optional[datetime] = None) -> Optional[int]:
    """Return the user id carried by a valid token, or None."""
    try:
        user_id, expiry, signature = token.split("|")
        expires_at = int(expiry)
        uid = int(user_id)
    except (AttributeError, ValueError):
        return None
    if not hmac.compare_digest(_sign(f"{user_id}|{expiry}"), signature):
        logger.warning("Rejected token with a bad signature")
        return None
    now = now or datetime.now(timezone.utc)
    if expires_at < int(now.timestamp()):
        return None
    return uid
