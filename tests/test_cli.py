import os
from datetime import datetime, timezone

from typer.testing import CliRunner

from libraryhub import database
from libraryhub.cli import app
from libraryhub.services.users import UserService

runner = CliRunner()


def test_init_db_creates_the_file(tmp_path, db_file):
    target = str(tmp_path / "fresh.db")
    result = runner.invoke(app, ["--db", target, "init-db"])
    assert result.exit_code == 0
    assert "Database initialized" in result.stdout
    assert os.path.exists(target)


def test_create_user(db_file):
    result = runner.invoke(app, ["create-user", "Lena", "lena@example.com", "--role", "librarian",
                                 "--password", "secret123"])
    assert result.exit_code == 0, result.stdout
    assert "Created librarian lena@example.com" in result.stdout
    assert UserService().find_by_email("lena@example.com").role.value == "librarian"


def test_create_user_duplicate_email(db_file, member):
    result = runner.invoke(app, ["create-user", "Ada", member.email, "--password", "secret123"])
    assert result.exit_code == 1
    assert "User with this email already exists" in result.stdout


def test_overdue_with_nothing_late(db_file):
    result = runner.invoke(app, ["overdue"])
    assert result.exit_code == 0
    assert "No overdue borrowings." in result.stdout


def test_overdue_lists_late_loans(borrowing_service, book, member):
    borrowing_service.borrow(book.id, member.id, due_date=datetime(2025, 1, 2, tzinfo=timezone.utc))
    result = runner.invoke(app, ["overdue"])
    assert result.exit_code == 0
    assert "Overdue borrowings" in result.stdout


def test_remind_overdue(borrowing_service, book, member):
    borrowing_service.borrow(book.id, member.id, due_date=datetime(2025, 1, 2, tzinfo=timezone.utc))
    result = runner.invoke(app, ["remind-overdue"])
    assert result.exit_code == 0
    assert "Sent 1 overdue reminder(s)." in result.stdout


def test_reconcile(borrowing_service, book, member):
    borrowing_service.borrow(book.id, member.id)
    assert "Counters are consistent." in runner.invoke(app, ["reconcile"]).stdout

    conn = database.get_db_connection()
    try:
        conn.execute("UPDATE books SET available_copies = 2 WHERE id = ?", (book.id,))
    finally:
        conn.close()

    result = runner.invoke(app, ["reconcile"])
    assert result.exit_code == 0
    assert "1 correction(s) applied." in result.stdout
