"""Role and ownership rules.

Every permission decision in the API, the services and the socket handlers
goes through ``is_allowed``.
"""

from enum import Enum
from typing import Optional

from libraryhub.errors import ForbiddenError
from libraryhub.models import Role, User


class Action(str, Enum):
    BOOK_CREATE = "book:create"
    BOOK_UPDATE = "book:update"
    BOOK_DELETE = "book:delete"
    BORROW = "borrowing:borrow"
    RETURN = "borrowing:return"
    BORROWING_LIST_ALL = "borrowing:list"
    BORROWING_VIEW = "borrowing:view"
    NOTIFICATION_LIST = "notification:list"
    NOTIFICATION_READ = "notification:read"
    NOTIFICATION_DELETE = "notification:delete"
    NOTIFICATION_BROADCAST = "notification:broadcast"
    USER_LIST = "user:list"
    USER_VIEW = "user:view"
    USER_CREATE = "user:create"
    USER_UPDATE = "user:update"
    USER_DELETE = "user:delete"
    CREATE_STAFF = "user:create-staff"
    SOCKET_RELAY = "socket:relay"


STAFF_ONLY = {
    Action.BOOK_CREATE,
    Action.BOOK_UPDATE,
    Action.BOOK_DELETE,
    Action.BORROW,
    Action.RETURN,
    Action.BORROWING_LIST_ALL,
    Action.NOTIFICATION_BROADCAST,
    Action.USER_LIST,
    Action.SOCKET_RELAY,
}

ADMIN_ONLY = {
    Action.USER_CREATE,
    Action.USER_UPDATE,
    Action.USER_DELETE,
    Action.CREATE_STAFF,
}

OWNER_OR_STAFF = {
    Action.BORROWING_VIEW,
    Action.USER_VIEW,
}

# Notifications are private even from staff
OWNER_ONLY = {
    Action.NOTIFICATION_LIST,
    Action.NOTIFICATION_READ,
    Action.NOTIFICATION_DELETE,
}


def is_allowed(actor: Optional[User], action: Action, owner_id: Optional[str] = None) -> bool:
    if actor is None or not actor.is_active:
        return False
    if action in ADMIN_ONLY:
        return actor.role == Role.ADMIN
    if action in STAFF_ONLY:
        return actor.is_staff
    if action in OWNER_OR_STAFF:
        return actor.is_staff or (owner_id is not None and actor.id == owner_id)
    if action in OWNER_ONLY:
        return owner_id is not None and actor.id == owner_id
    return False


def authorize(actor: Optional[User], action: Action, owner_id: Optional[str] = None,
              message: str = "Access denied: Insufficient permissions") -> None:
    """Raise ``ForbiddenError`` unless ``actor`` may perform ``action``."""
    if not is_allowed(actor, action, owner_id):
        raise ForbiddenError(message)
