import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from libraryhub.config import Settings, settings
from libraryhub.database import get_db_connection, transaction
from libraryhub.errors import NotFoundError, ValidationError
from libraryhub.events import NullPublisher, Publisher, UserTopic
from libraryhub.models import BorrowingStatus, Notification, NotificationType, User
from libraryhub.policy import Action, authorize
from libraryhub.utils import (
    Clock,
    clamp_page,
    new_id,
    overdue_days,
    paginate,
    parse_iso,
    summaries,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

NOTIFICATION_PAGE_SIZE = 20


def _embed_related(conn: sqlite3.Connection, items: List[Dict[str, Any]]) -> None:
    books = summaries(conn, "books", (item["relatedBookId"] for item in items),
                      {"title": "title", "author": "author", "isbn": "isbn"})
    borrowings = summaries(conn, "borrowings", (item["relatedBorrowingId"] for item in items),
                           {"due_date": "dueDate", "return_date": "returnDate", "status": "status"})
    for item in items:
        item["relatedBook"] = books.get(item["relatedBookId"])
        item["relatedBorrowing"] = borrowings.get(item["relatedBorrowingId"])


def _coerce_type(value: Union[str, NotificationType]) -> NotificationType:
    try:
        return NotificationType(value)
    except ValueError as e:
        allowed = ", ".join(t.value for t in NotificationType)
        raise ValidationError(f"Invalid notification type. Expected one of: {allowed}") from e


class NotificationService:
    """Stores notifications and hands them to the publisher once committed."""

    def __init__(self, publisher: Optional[Publisher] = None, clock: Clock = utcnow,
                 config: Settings = settings) -> None:
        self.publisher: Publisher = publisher or NullPublisher()
        self.clock = clock
        self.config = config

    # ------------------------- Writes ------------------------- #
    def insert(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        type: Union[str, NotificationType],
        message: str,
        related_book_id: Optional[str] = None,
        related_borrowing_id: Optional[str] = None,
    ) -> Notification:
        """Insert a notification on the caller's connection.

        Nothing is published; the caller publishes after its transaction
        commits.
        """
        notification_type = _coerce_type(type)
        if not message or not message.strip():
            raise ValidationError("Notification message is required")

        now = self.clock()
        notification = Notification(
            id=new_id(),
            user_id=user_id,
            type=notification_type,
            message=message,
            related_book_id=related_book_id,
            related_borrowing_id=related_borrowing_id,
            is_read=False,
            created_at=now,
            updated_at=now,
        )
        conn.execute(
            """
            INSERT INTO notifications (
                id, user_id, type, message, related_book_id, related_borrowing_id,
                is_read, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
            """,
            (
                notification.id, user_id, notification_type.value, message,
                related_book_id, related_borrowing_id, to_iso(now), to_iso(now),
            ),
        )
        return notification

    def publish(self, notification: Notification) -> None:
        try:
            self.publisher.publish_notification(UserTopic(notification.user_id), notification)
        except Exception:
            # The row is already committed; a push failure must not undo it
            logger.exception(f"Failed to publish notification {notification.id}")

    def create(
        self,
        user_id: str,
        type: Union[str, NotificationType],
        message: str,
        related_book_id: Optional[str] = None,
        related_borrowing_id: Optional[str] = None,
    ) -> Notification:
        with transaction() as conn:
            if conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is None:
                raise NotFoundError("User not found")
            notification = self.insert(conn, user_id, type, message, related_book_id, related_borrowing_id)
        logger.info(f"Created {notification.type.value} notification {notification.id} for user {user_id}")
        self.publish(notification)
        return notification

    def broadcast(
        self,
        user_ids: Iterable[str],
        message: str,
        type: Union[str, NotificationType] = NotificationType.SYSTEM,
        related_book_id: Optional[str] = None,
        related_borrowing_id: Optional[str] = None,
    ) -> List[Notification]:
        """Create one notification per recipient, all or nothing."""
        recipients = list(dict.fromkeys(user_ids))
        if not recipients:
            raise ValidationError("At least one recipient is required")

        created: List[Notification] = []
        with transaction() as conn:
            for user_id in recipients:
                if conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is None:
                    raise NotFoundError("User not found", error={"userId": user_id})
                created.append(
                    self.insert(conn, user_id, type, message, related_book_id, related_borrowing_id)
                )
        logger.info(f"Broadcast notification to {len(created)} user(s)")
        for notification in created:
            self.publish(notification)
        return created

    # ------------------------- Reads ------------------------- #
    def get(self, notification_id: str) -> Notification:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError("Notification not found")
        return Notification.from_row(row)

    def list_for_user(self, user_id: str, page: Optional[int] = None, limit: Optional[int] = None,
                      unread_only: bool = False) -> Dict[str, Any]:
        page, limit = clamp_page(page, limit, NOTIFICATION_PAGE_SIZE, self.config.max_page_size)
        where = ["user_id = ?"]
        params: List[Any] = [user_id]
        if unread_only:
            where.append("is_read = 0")
        conn = get_db_connection()
        try:
            return paginate(conn, "notifications", where, params, "created_at DESC, id DESC",
                            page, limit, Notification.from_row, _embed_related)
        finally:
            conn.close()

    # ------------------------- Owner actions ------------------------- #
    def mark_read(self, notification_id: str, actor: User) -> Notification:
        notification = self.get(notification_id)
        authorize(actor, Action.NOTIFICATION_READ, notification.user_id,
                  message="Not authorized to access this notification")
        if notification.is_read:
            return notification
        now = self.clock()
        conn = get_db_connection()
        try:
            conn.execute(
                "UPDATE notifications SET is_read = 1, updated_at = ? WHERE id = ?",
                (to_iso(now), notification_id),
            )
        finally:
            conn.close()
        notification.is_read = True
        notification.updated_at = now
        return notification

    def mark_all_read(self, user_id: str, actor: User) -> int:
        authorize(actor, Action.NOTIFICATION_READ, user_id,
                  message="Not authorized to update these notifications")
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "UPDATE notifications SET is_read = 1, updated_at = ? WHERE user_id = ? AND is_read = 0",
                (to_iso(self.clock()), user_id),
            )
            return cursor.rowcount
        finally:
            conn.close()

    def delete(self, notification_id: str, actor: User) -> None:
        notification = self.get(notification_id)
        authorize(actor, Action.NOTIFICATION_DELETE, notification.user_id,
                  message="Not authorized to delete this notification")
        conn = get_db_connection()
        try:
            conn.execute("DELETE FROM notifications WHERE id = ?", (notification_id,))
        finally:
            conn.close()
        logger.info(f"Deleted notification {notification_id}")

    # ------------------------- Reminders ------------------------- #
    def remind_overdue(self, now: Optional[datetime] = None) -> List[Notification]:
        """Create an ``overdue`` notification for every outstanding late loan."""
        now = now or self.clock()
        created: List[Notification] = []
        with transaction() as conn:
            rows = conn.execute(
                """
                SELECT b.id, b.user_id, b.book_id, b.due_date, k.title
                FROM borrowings b JOIN books k ON k.id = b.book_id
                WHERE b.status = ? AND b.return_date IS NULL AND b.due_date < ?
                  AND b.user_id IS NOT NULL
                ORDER BY b.due_date
                """,
                (BorrowingStatus.BORROWED.value, to_iso(now)),
            ).fetchall()
            for row in rows:
                days = overdue_days(parse_iso(row["due_date"]), now)
                unit = "day" if days == 1 else "days"
                message = (
                    f'"{row["title"]}" is {days} {unit} overdue. '
                    f"Please return it as soon as possible to limit your fine."
                )
                created.append(
                    self.insert(conn, row["user_id"], NotificationType.OVERDUE, message,
                                related_book_id=row["book_id"], related_borrowing_id=row["id"])
                )
        logger.info(f"Sent {len(created)} overdue reminder(s)")
        for notification in created:
            self.publish(notification)
        return created
