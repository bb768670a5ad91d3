"""Domain models for the library system.

Each model maps one table row. ``from_row`` builds the model from a
``sqlite3.Row`` and ``to_dict`` produces the camelCase JSON payload used by
the API and the real-time channel.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from libraryhub.utils import parse_iso, to_iso


class Role(str, Enum):
    USER = "user"
    LIBRARIAN = "librarian"
    ADMIN = "admin"


class BorrowingStatus(str, Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"
    OVERDUE = "overdue"
    LOST = "lost"


class NotificationType(str, Enum):
    DUE_DATE_REMINDER = "due_date_reminder"
    OVERDUE = "overdue"
    BOOK_AVAILABLE = "book_available"
    RETURN_CONFIRMATION = "return_confirmation"
    SYSTEM = "system"


STAFF_ROLES = (Role.LIBRARIAN, Role.ADMIN)


@dataclass
class User:
    id: str
    name: str
    email: str
    password_hash: str
    membership_id: str
    role: Role = Role.USER
    profile_picture: Optional[str] = None
    borrowing_limit: int = 5
    borrowed_books: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def can_borrow(self) -> bool:
        return self.borrowed_books < self.borrowing_limit

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def to_dict(self) -> Dict[str, Any]:
        # The password hash never leaves the service layer
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "profilePicture": self.profile_picture,
            "membershipId": self.membership_id,
            "borrowingLimit": self.borrowing_limit,
            "borrowedBooks": self.borrowed_books,
            "canBorrow": self.can_borrow,
            "isActive": self.is_active,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "User":
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            membership_id=row["membership_id"],
            role=Role(row["role"]),
            profile_picture=row["profile_picture"],
            borrowing_limit=row["borrowing_limit"],
            borrowed_books=row["borrowed_books"],
            is_active=bool(row["is_active"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )


@dataclass
class Book:
    id: str
    title: str
    author: str
    isbn: str
    genre: str
    description: str
    location: str
    published_date: Optional[datetime] = None
    cover_image: Optional[str] = None
    total_copies: int = 1
    available_copies: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def status(self) -> str:
        return "Available" if self.available_copies > 0 else "Unavailable"

    def __str__(self) -> str:
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "genre": self.genre,
            "description": self.description,
            "publishedDate": to_iso(self.published_date),
            "coverImage": self.cover_image,
            "totalCopies": self.total_copies,
            "availableCopies": self.available_copies,
            "location": self.location,
            "status": self.status,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Book":
        return Book(
            id=row["id"],
            title=row["title"],
            author=row["author"],
            isbn=row["isbn"],
            genre=row["genre"],
            description=row["description"],
            location=row["location"],
            published_date=parse_iso(row["published_date"]),
            cover_image=row["cover_image"],
            total_copies=row["total_copies"],
            available_copies=row["available_copies"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )


@dataclass
class Borrowing:
    """A loan of one book to one user."""
    id: str
    user_id: Optional[str]
    book_id: Optional[str]
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: BorrowingStatus = BorrowingStatus.BORROWED
    fine: float = 0.0
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.return_date is None

    def is_overdue(self, now: datetime) -> bool:
        """True while the loan is outstanding past its due date."""
        return self.status == BorrowingStatus.BORROWED and self.due_date < now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "bookId": self.book_id,
            "borrowDate": to_iso(self.borrow_date),
            "dueDate": to_iso(self.due_date),
            "returnDate": to_iso(self.return_date),
            "status": self.status.value,
            "fine": self.fine,
            "notes": self.notes,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Borrowing":
        return Borrowing(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            borrow_date=parse_iso(row["borrow_date"]),
            due_date=parse_iso(row["due_date"]),
            return_date=parse_iso(row["return_date"]),
            status=BorrowingStatus(row["status"]),
            fine=row["fine"],
            notes=row["notes"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )


@dataclass
class Notification:
    id: str
    user_id: str
    type: NotificationType
    message: str
    related_book_id: Optional[str] = None
    related_borrowing_id: Optional[str] = None
    is_read: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type.value,
            "message": self.message,
            "relatedBookId": self.related_book_id,
            "relatedBorrowingId": self.related_borrowing_id,
            "isRead": self.is_read,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Notification":
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            type=NotificationType(row["type"]),
            message=row["message"],
            related_book_id=row["related_book_id"],
            related_borrowing_id=row["related_borrowing_id"],
            is_read=bool(row["is_read"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )
