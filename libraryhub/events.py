"""Publishing seam between the services and the real-time channel.

Services only know about ``Publisher``; the WebSocket hub in
``libraryhub.services.realtime`` is one implementation of it.
"""

from dataclasses import dataclass
from typing import Protocol

from libraryhub.models import Book, Notification


@dataclass(frozen=True)
class UserTopic:
    """Delivery address for everything aimed at a single user."""

    user_id: str

    @property
    def room(self) -> str:
        return self.user_id


class Publisher(Protocol):
    def publish_notification(self, topic: UserTopic, notification: Notification) -> None:
        ...

    def publish_book_update(self, book: Book) -> None:
        ...


class NullPublisher:
    """Publisher that drops everything. Used by the CLI and in tests."""

    def publish_notification(self, topic: UserTopic, notification: Notification) -> None:
        pass

    def publish_book_update(self, book: Book) -> None:
        pass
