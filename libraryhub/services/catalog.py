import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from libraryhub.config import Settings, settings
from libraryhub.database import get_db_connection, transaction
from libraryhub.errors import ConflictError, NotFoundError, ValidationError
from libraryhub.events import NullPublisher, Publisher
from libraryhub.models import Book
from libraryhub.utils import Clock, clamp_page, ensure_utc, like_pattern, new_id, paginate, to_iso, utcnow

logger = logging.getLogger(__name__)

# API field name -> column
SORTABLE_FIELDS = {
    "title": "title",
    "author": "author",
    "genre": "genre",
    "isbn": "isbn",
    "publishedDate": "published_date",
    "availableCopies": "available_copies",
    "totalCopies": "total_copies",
    "createdAt": "created_at",
}


def _normalize_isbn(isbn: str) -> str:
    return isbn.replace("-", "").replace(" ", "").strip()


def _sort_clause(sort: Optional[str]) -> str:
    if not sort:
        return "title ASC"
    direction = "DESC" if sort.startswith("-") else "ASC"
    field = sort.lstrip("-")
    column = SORTABLE_FIELDS.get(field)
    if column is None:
        raise ValidationError(f"Cannot sort by '{field}'")
    return f"{column} {direction}, id ASC"


class CatalogService:
    """Book CRUD and search."""

    def __init__(self, publisher: Optional[Publisher] = None, clock: Clock = utcnow,
                 config: Settings = settings) -> None:
        self.publisher: Publisher = publisher or NullPublisher()
        self.clock = clock
        self.config = config

    def get_book(self, book_id: str) -> Book:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError("Book not found")
        return Book.from_row(row)

    def list_books(
        self,
        title: Optional[str] = None,
        author: Optional[str] = None,
        genre: Optional[str] = None,
        available: Optional[bool] = None,
        sort: Optional[str] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        page, limit = clamp_page(page, limit, self.config.default_page_size, self.config.max_page_size)
        where: List[str] = []
        params: List[Any] = []
        for column, value in (("title", title), ("author", author), ("genre", genre)):
            if value:
                where.append(f"{column} LIKE ? ESCAPE '\\'")
                params.append(like_pattern(value))
        if available is True:
            where.append("available_copies > 0")
        elif available is False:
            where.append("available_copies = 0")

        conn = get_db_connection()
        try:
            return paginate(conn, "books", where, params, _sort_clause(sort), page, limit, Book.from_row)
        finally:
            conn.close()

    def search_books(self, query: str, page: Optional[int] = None, limit: Optional[int] = None) -> Dict[str, Any]:
        """Match every word of ``query`` against title, author, genre, description or ISBN."""
        if not query or not query.strip():
            raise ValidationError("Search query is required")
        page, limit = clamp_page(page, limit, self.config.default_page_size, self.config.max_page_size)

        where: List[str] = []
        params: List[Any] = []
        for term in query.split():
            pattern = like_pattern(term)
            where.append(
                "(title LIKE ? ESCAPE '\\' OR author LIKE ? ESCAPE '\\' OR genre LIKE ? ESCAPE '\\'"
                " OR description LIKE ? ESCAPE '\\' OR isbn LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern] * 5)

        conn = get_db_connection()
        try:
            return paginate(conn, "books", where, params, "title ASC, id ASC", page, limit, Book.from_row)
        finally:
            conn.close()

    def create_book(
        self,
        title: str,
        author: str,
        isbn: str,
        genre: str,
        description: str,
        location: str,
        published_date: Optional[datetime] = None,
        cover_image: Optional[str] = None,
        total_copies: Optional[int] = None,
    ) -> Book:
        now = self.clock()
        copies = total_copies if total_copies is not None else 1
        if copies < 0:
            raise ValidationError("Total copies cannot be negative")
        book = Book(
            id=new_id(),
            title=title,
            author=author,
            isbn=_normalize_isbn(isbn),
            genre=genre,
            description=description,
            location=location,
            published_date=ensure_utc(published_date) if published_date else None,
            cover_image=cover_image or self.config.default_cover,
            total_copies=copies,
            available_copies=copies,
            created_at=now,
            updated_at=now,
        )
        with transaction() as conn:
            if conn.execute("SELECT 1 FROM books WHERE isbn = ?", (book.isbn,)).fetchone():
                raise ConflictError("Book with this ISBN already exists")
            try:
                conn.execute(
                    """
                    INSERT INTO books (
                        id, title, author, isbn, genre, description, published_date,
                        cover_image, total_copies, available_copies, location, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        book.id, book.title, book.author, book.isbn, book.genre, book.description,
                        to_iso(book.published_date), book.cover_image, book.total_copies,
                        book.available_copies, book.location, to_iso(now), to_iso(now),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError("Book with this ISBN already exists") from e
        logger.info(f"Added book {book.id}: {book}")
        return book

    def update_book(self, book_id: str, changes: Dict[str, Any]) -> Book:
        """Apply a partial update.

        Changing ``total_copies`` shifts ``available_copies`` by the same
        amount, never below 0. An explicit ``available_copies`` is applied
        afterwards and may not exceed the total.
        """
        now = self.clock()
        with transaction() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            if row is None:
                raise NotFoundError("Book not found")
            book = Book.from_row(row)

            for field in ("title", "author", "genre", "description", "cover_image", "location"):
                value = changes.get(field)
                if value:
                    setattr(book, field, value)
            if changes.get("published_date"):
                book.published_date = ensure_utc(changes["published_date"])
            if changes.get("isbn"):
                book.isbn = _normalize_isbn(changes["isbn"])

            total = changes.get("total_copies")
            if total is not None:
                if total < 0:
                    raise ValidationError("Total copies cannot be negative")
                diff = total - book.total_copies
                book.total_copies = total
                book.available_copies = max(book.available_copies + diff, 0)

            available = changes.get("available_copies")
            if available is not None:
                if available > book.total_copies:
                    raise ConflictError("Available copies cannot exceed total copies")
                if available < 0:
                    raise ValidationError("Available copies cannot be negative")
                book.available_copies = available

            book.updated_at = now
            try:
                conn.execute(
                    """
                    UPDATE books SET
                        title = ?, author = ?, isbn = ?, genre = ?, description = ?, published_date = ?,
                        cover_image = ?, total_copies = ?, available_copies = ?, location = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        book.title, book.author, book.isbn, book.genre, book.description,
                        to_iso(book.published_date), book.cover_image, book.total_copies,
                        book.available_copies, book.location, to_iso(now), book.id,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError("Book with this ISBN already exists") from e

        logger.info(f"Updated book {book.id}")
        try:
            self.publisher.publish_book_update(book)
        except Exception:
            logger.exception(f"Failed to publish availability of book {book.id}")
        return book

    def delete_book(self, book_id: str) -> None:
        with transaction() as conn:
            if conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is None:
                raise NotFoundError("Book not found")
            open_loans = conn.execute(
                "SELECT COUNT(*) FROM borrowings WHERE book_id = ? AND return_date IS NULL", (book_id,)
            ).fetchone()[0]
            if open_loans:
                raise ConflictError("Cannot delete a book with active borrowings",
                                    error={"activeBorrowings": open_loans})
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info(f"Removed book {book_id}")
