from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from libraryhub import database
from libraryhub.api import create_app
from libraryhub.models import Role
from libraryhub.security import create_access_token
from libraryhub.services.borrowing import BorrowingService
from libraryhub.services.catalog import CatalogService
from libraryhub.services.notifications import NotificationService
from libraryhub.services.users import UserService

FIXED_NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingPublisher:
    """Publisher that keeps everything it is asked to publish."""

    def __init__(self) -> None:
        self.notifications = []
        self.books = []

    def publish_notification(self, topic, notification) -> None:
        self.notifications.append((topic, notification))

    def publish_book_update(self, book) -> None:
        self.books.append(book)


@pytest.fixture
def db_file(tmp_path, request, monkeypatch):
    # Every test gets its own database file
    path = str(tmp_path / f"library_{request.node.name[:40].replace('/', '_')}.db")
    monkeypatch.setattr(database, "DATABASE_FILE", path)
    database.initialize_database()
    return path


@pytest.fixture
def clock():
    return FakeClock(FIXED_NOW)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def notification_service(db_file, publisher, clock):
    return NotificationService(publisher, clock)


@pytest.fixture
def borrowing_service(notification_service, publisher, clock):
    return BorrowingService(notification_service, publisher, clock)


@pytest.fixture
def catalog_service(db_file, publisher, clock):
    return CatalogService(publisher, clock)


@pytest.fixture
def user_service(db_file, clock):
    return UserService(clock)


@pytest.fixture
def member(user_service):
    return user_service.create_user("Ada Reader", "ada@example.com", "secret123")


@pytest.fixture
def other_member(user_service):
    return user_service.create_user("Ben Reader", "ben@example.com", "secret123")


@pytest.fixture
def librarian(user_service):
    return user_service.create_user("Lena Librarian", "lena@example.com", "secret123", Role.LIBRARIAN)


@pytest.fixture
def admin(user_service):
    return user_service.create_user("Alan Admin", "alan@example.com", "secret123", Role.ADMIN)


@pytest.fixture
def book(catalog_service):
    return catalog_service.create_book(
        title="Dune",
        author="Frank Herbert",
        isbn="978-0441172719",
        genre="Science Fiction",
        description="A desert planet and its spice.",
        location="Shelf A1",
        total_copies=2,
    )


@pytest.fixture
def single_copy_book(catalog_service):
    return catalog_service.create_book(
        title="The Left Hand of Darkness",
        author="Ursula K. Le Guin",
        isbn="9780441478125",
        genre="Science Fiction",
        description="An envoy on the planet Gethen.",
        location="Shelf B2",
        total_copies=1,
    )


@pytest.fixture
def client(db_file):
    with TestClient(create_app()) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _headers
