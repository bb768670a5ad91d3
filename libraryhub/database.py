import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator

from libraryhub.config import settings

logger = logging.getLogger(__name__)

# Default database file.
# Tests point this at a per-test file before creating services.
DATABASE_FILE = settings.database_file


def get_db_connection() -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; multi-statement writes go through
    ``transaction()``. Foreign keys are enforced on every connection.
    """
    conn = sqlite3.connect(DATABASE_FILE, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run a block inside a single write transaction.

    ``BEGIN IMMEDIATE`` takes the write lock up front, so reads made inside
    the block see a state no other writer can change before commit.
    """
    conn = get_db_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
    finally:
        conn.close()


def create_tables() -> None:
    """Create the tables and indexes if they do not exist yet."""
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE COLLATE NOCASE,
                password_hash TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'user' CHECK(role IN ('user', 'librarian', 'admin')),
                profile_picture TEXT,
                membership_id TEXT NOT NULL UNIQUE,
                borrowing_limit INTEGER NOT NULL DEFAULT 5,
                borrowed_books INTEGER NOT NULL DEFAULT 0 CHECK(borrowed_books >= 0),
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT NOT NULL UNIQUE,
                genre TEXT NOT NULL,
                description TEXT NOT NULL,
                published_date TEXT,
                cover_image TEXT,
                total_copies INTEGER NOT NULL DEFAULT 1 CHECK(total_copies >= 0),
                available_copies INTEGER NOT NULL DEFAULT 1 CHECK(available_copies >= 0),
                location TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # Loan history survives deletion of the user or book it points to
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS borrowings (
                id TEXT PRIMARY KEY,
                user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
                book_id TEXT REFERENCES books(id) ON DELETE SET NULL,
                borrow_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'borrowed'
                    CHECK(status IN ('borrowed', 'returned', 'overdue', 'lost')),
                fine REAL NOT NULL DEFAULT 0,
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                type TEXT NOT NULL CHECK(type IN (
                    'due_date_reminder', 'overdue', 'book_available', 'return_confirmation', 'system'
                )),
                message TEXT NOT NULL,
                related_book_id TEXT REFERENCES books(id) ON DELETE SET NULL,
                related_borrowing_id TEXT REFERENCES borrowings(id) ON DELETE SET NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_user_status ON borrowings(user_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_book ON borrowings(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_due_date ON borrowings(due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user_read ON notifications(user_id, is_read)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_created_at ON notifications(created_at DESC)")
    finally:
        conn.close()


def initialize_database() -> None:
    """Initialize the database, creating tables when needed."""
    create_tables()
    logger.info(f"Database ready at {DATABASE_FILE}")
