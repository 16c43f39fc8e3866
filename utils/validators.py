import re
from typing import Optional

from config import settings

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AccessCodeValidator:
    """Community access codes are matched case-insensitively and stored uppercase."""

    @staticmethod
    def normalize(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return raw.strip().upper()

    @staticmethod
    def is_valid(code: Optional[str], min_length: Optional[int] = None) -> bool:
        min_length = settings.min_access_code_length if min_length is None else min_length
        return len(AccessCodeValidator.normalize(code)) >= min_length


class PhoneValidator:

    @staticmethod
    def normalize_phone(raw: Optional[str]) -> str:
        """Keep digits only, so '+7 (701) 123-45-67' and '77011234567' compare equal."""
        if not raw:
            return ""
        return re.sub(r"\D", "", raw)


class EmailValidator:

    @staticmethod
    def normalize(raw: Optional[str]) -> str:
        return (raw or "").strip().lower()

    @staticmethod
    def is_valid_email(raw: Optional[str]) -> bool:
        return bool(_EMAIL_RE.match(EmailValidator.normalize(raw)))


class TextValidator:

    @staticmethod
    def clean(text: Optional[str]) -> Optional[str]:
        """Strip surrounding whitespace; blank strings become None."""
        if text is None:
            return None
        stripped = text.strip()
        return stripped or None
