"""Who may manage what.

Administrators manage everything. Otherwise a community is managed by its
owner, and a book by the owner of the community it belongs to. Legacy
communities have no owner, so only administrators manage them and their books.
"""

from __future__ import annotations

from typing import Optional, Union

from book import Book
from community import Community
from errors import Forbidden
from user import User

Resource = Union[Community, Book]


def _owner_id(resource: Resource) -> Optional[int]:
    if isinstance(resource, Community):
        return resource.owner_id
    if isinstance(resource, Book):
        return resource.community_owner_id
    raise TypeError(f"Unsupported resource type: {type(resource).__name__}")


def can_manage(actor: User, resource: Resource) -> bool:
    if actor.is_admin:
        return True
    owner_id = _owner_id(resource)
    return owner_id is not None and owner_id == actor.id


def require_manage(actor: User, resource: Resource, message: Optional[str] = None) -> None:
    if not can_manage(actor, resource):
        raise Forbidden(message)


def require_admin(actor: User, message: str = "Only an administrator can do this.") -> None:
    if not actor.is_admin:
        raise Forbidden(message)
