from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)


@dataclass
class User:
    """A registered person. ``password`` holds the digest, never the plain text."""

    id: int
    name: str
    email: str
    password: str = ""
    phone: str = ""
    role: str = ROLE_USER
    community_id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    community: Optional[Dict[str, Any]] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "community_id": self.community_id,
            "community": self.community,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_row(row: Any) -> "User":
        data = dict(row)
        community = None
        if data.get("community_id") is not None and data.get("community_name") is not None:
            community = {
                "id": data["community_id"],
                "name": data["community_name"],
                "access_code": data.get("community_access_code"),
            }
        return User(
            id=data["id"],
            name=data["name"],
            email=data["email"],
            password=data.get("password") or "",
            phone=data.get("phone") or "",
            role=data.get("role") or ROLE_USER,
            community_id=data.get("community_id"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            community=community,
        )
