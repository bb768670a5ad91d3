"""Borrow and return workflow.

Each borrow or return is one ``BEGIN IMMEDIATE`` transaction: the book and
user counters, the borrowing row and the notification row are written
together or not at all. Publishing happens only after commit.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from libraryhub.config import Settings, settings
from libraryhub.database import get_db_connection, transaction
from libraryhub.errors import ConflictError, NotFoundError, ValidationError
from libraryhub.events import NullPublisher, Publisher
from libraryhub.models import Book, Borrowing, BorrowingStatus, NotificationType, User
from libraryhub.services.notifications import NotificationService
from libraryhub.utils import (
    Clock,
    calculate_due_date,
    calculate_fine,
    clamp_page,
    ensure_utc,
    new_id,
    paginate,
    summaries,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

USER_SUMMARY = {"name": "name", "email": "email", "membership_id": "membershipId"}
BOOK_SUMMARY = {"title": "title", "author": "author", "isbn": "isbn"}


def embed_people_and_books(conn: sqlite3.Connection, items: List[Dict[str, Any]]) -> None:
    """Add ``user`` and ``book`` summaries to serialized borrowings.

    Either is ``None`` when the referenced row has been deleted.
    """
    users = summaries(conn, "users", (item["userId"] for item in items), USER_SUMMARY)
    books = summaries(conn, "books", (item["bookId"] for item in items), BOOK_SUMMARY)
    for item in items:
        item["user"] = users.get(item["userId"])
        item["book"] = books.get(item["bookId"])


def _borrow_message(book: Book, due_date: datetime) -> str:
    return f'You have borrowed "{book.title}". It is due back by {due_date.strftime("%m/%d/%Y")}.'


def _return_message(book: Book, fine: float) -> str:
    message = f'You have returned "{book.title}". '
    if fine > 0:
        return message + f"A fine of ${fine:.2f} has been applied."
    return message + "Thank you for returning it on time."


class BorrowingService:
    def __init__(
        self,
        notifications: NotificationService,
        publisher: Optional[Publisher] = None,
        clock: Clock = utcnow,
        config: Settings = settings,
    ) -> None:
        self.notifications = notifications
        self.publisher: Publisher = publisher or NullPublisher()
        self.clock = clock
        self.config = config

    # ------------------------- Lookups ------------------------- #
    @staticmethod
    def _load_book(conn: sqlite3.Connection, book_id: Optional[str]) -> Optional[Book]:
        if not book_id:
            return None
        row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_row(row) if row else None

    @staticmethod
    def _load_user(conn: sqlite3.Connection, user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_row(row) if row else None

    @staticmethod
    def _load_borrowing(conn: sqlite3.Connection, borrowing_id: str) -> Optional[Borrowing]:
        row = conn.execute("SELECT * FROM borrowings WHERE id = ?", (borrowing_id,)).fetchone()
        return Borrowing.from_row(row) if row else None

    # ------------------------- Borrow ------------------------- #
    def borrow(self, book_id: str, user_id: str, due_date: Optional[datetime] = None) -> Borrowing:
        """Lend one copy of a book to a user.

        Raises ``NotFoundError`` when the book or user does not exist and
        ``ConflictError`` when no copy is available, the user is at their
        borrowing limit, or already holds an open loan of the same book.
        """
        now = self.clock()
        with transaction() as conn:
            book = self._load_book(conn, book_id)
            if book is None:
                raise NotFoundError("Book not found")
            user = self._load_user(conn, user_id)
            if user is None:
                raise NotFoundError("User not found")

            if book.available_copies <= 0:
                raise ConflictError("Book is not available for borrowing")
            if not user.can_borrow:
                raise ConflictError("User has reached their borrowing limit")
            if not self.config.allow_duplicate_loans:
                open_loan = conn.execute(
                    "SELECT 1 FROM borrowings WHERE user_id = ? AND book_id = ? AND return_date IS NULL",
                    (user.id, book.id),
                ).fetchone()
                if open_loan is not None:
                    raise ConflictError("User already has an open borrowing for this book")

            due = ensure_utc(due_date) if due_date else calculate_due_date(now, self.config.loan_period_days)
            borrowing = Borrowing(
                id=new_id(),
                user_id=user.id,
                book_id=book.id,
                borrow_date=now,
                due_date=due,
                status=BorrowingStatus.BORROWED,
                fine=0.0,
                created_at=now,
                updated_at=now,
            )

            conn.execute(
                "UPDATE books SET available_copies = available_copies - 1, updated_at = ? WHERE id = ?",
                (to_iso(now), book.id),
            )
            conn.execute(
                "UPDATE users SET borrowed_books = borrowed_books + 1, updated_at = ? WHERE id = ?",
                (to_iso(now), user.id),
            )
            conn.execute(
                """
                INSERT INTO borrowings (
                    id, user_id, book_id, borrow_date, due_date, return_date,
                    status, fine, notes, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, NULL, ?, 0, NULL, ?, ?)
                """,
                (
                    borrowing.id, user.id, book.id, to_iso(now), to_iso(due),
                    borrowing.status.value, to_iso(now), to_iso(now),
                ),
            )
            book.available_copies -= 1
            book.updated_at = now

            notification = self.notifications.insert(
                conn,
                user.id,
                NotificationType.DUE_DATE_REMINDER,
                _borrow_message(book, due),
                related_book_id=book.id,
                related_borrowing_id=borrowing.id,
            )

        logger.info(f"User {user.id} borrowed book {book.id} (borrowing {borrowing.id}, due {to_iso(due)})")
        self._publish(notification, book)
        return borrowing

    # ------------------------- Return ------------------------- #
    def return_book(self, borrowing_id: str, condition_note: Optional[str] = None) -> Borrowing:
        now = self.clock()
        with transaction() as conn:
            borrowing = self._load_borrowing(conn, borrowing_id)
            if borrowing is None:
                raise NotFoundError("Borrowing record not found")
            if borrowing.return_date is not None or borrowing.status == BorrowingStatus.RETURNED:
                raise ConflictError("Book has already been returned")

            book = self._load_book(conn, borrowing.book_id)
            user = self._load_user(conn, borrowing.user_id)
            if book is None or user is None:
                raise NotFoundError("Associated book or user not found")

            fine = calculate_fine(borrowing.due_date, now, self.config.fine_per_day)
            borrowing.return_date = now
            borrowing.fine = fine
            borrowing.status = BorrowingStatus.OVERDUE if now > borrowing.due_date else BorrowingStatus.RETURNED
            if condition_note and condition_note.strip():
                note = f"Return condition: {condition_note.strip()}"
                borrowing.notes = f"{borrowing.notes}\n{note}" if borrowing.notes else note
            borrowing.updated_at = now

            conn.execute(
                """
                UPDATE borrowings
                SET return_date = ?, status = ?, fine = ?, notes = ?, updated_at = ?
                WHERE id = ?
                """,
                (to_iso(now), borrowing.status.value, fine, borrowing.notes, to_iso(now), borrowing.id),
            )
            conn.execute(
                """
                UPDATE books
                SET available_copies = MIN(available_copies + 1, total_copies), updated_at = ?
                WHERE id = ?
                """,
                (to_iso(now), book.id),
            )
            if user.borrowed_books <= 0:
                logger.warning(f"User {user.id} has no borrowed books on record; keeping the count at 0")
            conn.execute(
                "UPDATE users SET borrowed_books = MAX(borrowed_books - 1, 0), updated_at = ? WHERE id = ?",
                (to_iso(now), user.id),
            )
            book = self._load_book(conn, book.id)

            notification = self.notifications.insert(
                conn,
                user.id,
                NotificationType.RETURN_CONFIRMATION,
                _return_message(book, fine),
                related_book_id=book.id,
                related_borrowing_id=borrowing.id,
            )

        logger.info(f"Borrowing {borrowing.id} returned with status {borrowing.status.value}, fine {fine:.2f}")
        self._publish(notification, book)
        return borrowing

    def _publish(self, notification, book: Book) -> None:
        self.notifications.publish(notification)
        try:
            self.publisher.publish_book_update(book)
        except Exception:
            logger.exception(f"Failed to publish availability of book {book.id}")

    # ------------------------- Queries ------------------------- #
    def get(self, borrowing_id: str) -> Borrowing:
        conn = get_db_connection()
        try:
            borrowing = self._load_borrowing(conn, borrowing_id)
        finally:
            conn.close()
        if borrowing is None:
            raise NotFoundError("Borrowing record not found")
        return borrowing

    def describe(self, borrowing: Borrowing) -> Dict[str, Any]:
        """Serialize a borrowing together with its user and book summaries."""
        item = borrowing.to_dict()
        conn = get_db_connection()
        try:
            embed_people_and_books(conn, [item])
        finally:
            conn.close()
        return item

    def list(
        self,
        user_id: Optional[str] = None,
        book_id: Optional[str] = None,
        status: Optional[str] = None,
        overdue_only: bool = False,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Page through borrowings, newest first.

        ``overdue_only`` selects loans still out past their due date and
        takes precedence over ``status``.
        """
        page, limit = clamp_page(page, limit, self.config.default_page_size, self.config.max_page_size)
        where: List[str] = []
        params: List[Any] = []
        if user_id:
            where.append("user_id = ?")
            params.append(user_id)
        if book_id:
            where.append("book_id = ?")
            params.append(book_id)
        if overdue_only:
            where.extend(["status = ?", "due_date < ?"])
            params.extend([BorrowingStatus.BORROWED.value, to_iso(self.clock())])
        elif status:
            try:
                params.append(BorrowingStatus(status).value)
            except ValueError as e:
                raise ValidationError(f"Invalid borrowing status: {status}") from e
            where.append("status = ?")

        conn = get_db_connection()
        try:
            return paginate(conn, "borrowings", where, params, "borrow_date DESC, id DESC",
                            page, limit, Borrowing.from_row, embed_people_and_books)
        finally:
            conn.close()

    def history(self, user_id: str, page: Optional[int] = None, limit: Optional[int] = None) -> Dict[str, Any]:
        return self.list(user_id=user_id, page=page, limit=limit)

    def list_overdue(self, now: Optional[datetime] = None) -> List[Borrowing]:
        now = now or self.clock()
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM borrowings
                WHERE status = ? AND return_date IS NULL AND due_date < ?
                ORDER BY due_date
                """,
                (BorrowingStatus.BORROWED.value, to_iso(now)),
            ).fetchall()
        finally:
            conn.close()
        return [Borrowing.from_row(row) for row in rows]

    # ------------------------- Repair ------------------------- #
    def reconcile(self) -> List[Dict[str, Any]]:
        """Recompute the user and book counters from the open borrowings.

        Returns one entry per corrected row.
        """
        now = to_iso(self.clock())
        corrections: List[Dict[str, Any]] = []
        with transaction() as conn:
            users = conn.execute(
                """
                SELECT u.id, u.borrowed_books AS current,
                       (SELECT COUNT(*) FROM borrowings b
                        WHERE b.user_id = u.id AND b.return_date IS NULL) AS expected
                FROM users u
                """
            ).fetchall()
            for row in users:
                if row["current"] != row["expected"]:
                    conn.execute(
                        "UPDATE users SET borrowed_books = ?, updated_at = ? WHERE id = ?",
                        (row["expected"], now, row["id"]),
                    )
                    corrections.append({"entity": "user", "id": row["id"], "field": "borrowedBooks",
                                        "from": row["current"], "to": row["expected"]})

            books = conn.execute(
                """
                SELECT k.id, k.available_copies AS current,
                       MAX(k.total_copies - (SELECT COUNT(*) FROM borrowings b
                                             WHERE b.book_id = k.id AND b.return_date IS NULL), 0) AS expected
                FROM books k
                """
            ).fetchall()
            for row in books:
                if row["current"] != row["expected"]:
                    conn.execute(
                        "UPDATE books SET available_copies = ?, updated_at = ? WHERE id = ?",
                        (row["expected"], now, row["id"]),
                    )
                    corrections.append({"entity": "book", "id": row["id"], "field": "availableCopies",
                                        "from": row["current"], "to": row["expected"]})

        for correction in corrections:
            logger.warning(
                f"Reconciled {correction['entity']} {correction['id']}: "
                f"{correction['field']} {correction['from']} -> {correction['to']}"
            )
        return corrections
