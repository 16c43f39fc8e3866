from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

TRANSFER_REQUEST = "transfer_request"
TRANSFER_CODE = "transfer_code"
CHAT = "chat"
MESSAGE_TYPES = (TRANSFER_REQUEST, TRANSFER_CODE, CHAT)


@dataclass
class Message:
    """A notification addressed to one user about one book."""

    id: int
    from_user_id: int
    to_user_id: int
    book_id: int
    message_type: str
    content: str
    is_read: bool = False
    transfer_code: Optional[str] = None
    created_at: Optional[str] = None
    from_user: Optional[Dict[str, Any]] = None
    book: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "book_id": self.book_id,
            "message_type": self.message_type,
            "content": self.content,
            "is_read": self.is_read,
            "transfer_code": self.transfer_code,
            "created_at": self.created_at,
            "from_user": self.from_user,
            "book": self.book,
        }

    @staticmethod
    def from_row(row: Any) -> "Message":
        data = dict(row)
        from_user = None
        if data.get("from_user_name") is not None:
            from_user = {"id": data["from_user_id"], "name": data["from_user_name"]}
        book = None
        if data.get("book_title") is not None:
            book = {"id": data["book_id"], "title": data["book_title"]}
        return Message(
            id=data["id"],
            from_user_id=data["from_user_id"],
            to_user_id=data["to_user_id"],
            book_id=data["book_id"],
            message_type=data["message_type"],
            content=data["content"],
            is_read=bool(data.get("is_read")),
            transfer_code=data.get("transfer_code"),
            created_at=data.get("created_at"),
            from_user=from_user,
            book=book,
        )
