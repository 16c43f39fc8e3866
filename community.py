from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class Community:
    """A group of users sharing a pool of books, joined through an access code.

    ``owner_id`` is ``None`` for legacy communities created by an administrator.
    """

    id: int
    name: str
    access_code: str
    description: str = ""
    owner_id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    owner: Optional[Dict[str, Any]] = None
    member_count: int = 0
    book_count: int = 0

    @property
    def is_legacy(self) -> bool:
        return self.owner_id is None

    def public_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "description": self.description}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "access_code": self.access_code,
            "owner_id": self.owner_id,
            "owner": self.owner,
            "member_count": self.member_count,
            "book_count": self.book_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_row(row: Any) -> "Community":
        data = dict(row)
        owner = None
        if data.get("owner_id") is not None and data.get("owner_name") is not None:
            owner = {"id": data["owner_id"], "name": data["owner_name"], "email": data.get("owner_email")}
        return Community(
            id=data["id"],
            name=data["name"],
            access_code=data["access_code"],
            description=data.get("description") or "",
            owner_id=data.get("owner_id"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            owner=owner,
            member_count=data.get("member_count") or 0,
            book_count=data.get("book_count") or 0,
        )
