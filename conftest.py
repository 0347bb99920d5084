from dataclasses import replace
from datetime import datetime

import pytest

from circulation.config import settings
from circulation.database import Database
from circulation.lifecycle import LoanLifecycleManager
from circulation.models import Book, Role
from circulation.services.notifications import NotificationHub

FIXED_NOW = datetime(2024, 3, 1, 10, 0, 0)


class FakeClock:
    """Settable clock so tests can move time forward."""

    def __init__(self, now=FIXED_NOW):
        self.now = now

    def __call__(self):
        return self.now


class RecordingHandler:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def kinds(self):
        return [e.kind for e in self.events]


@pytest.fixture
def config(tmp_path, request):
    # Each test gets its own database file; in-memory databases are not shared across pooled connections
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    return replace(settings, database_file=db_file, enable_email_notifications=False, password_iterations=1000)


@pytest.fixture
def db(config):
    database = Database(config.database_file, pool_size=4, timeout=5)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return RecordingHandler()


@pytest.fixture
def manager(db, config, clock, recorder):
    return LoanLifecycleManager(db, notifications=NotificationHub([recorder]), config=config, clock=clock)


@pytest.fixture
def reader(manager):
    return manager.users.register("reader@example.com", "secret1", "Rita", "Reader")


@pytest.fixture
def librarian(manager):
    return manager.users.register("librarian@example.com", "secret1", "Lena", "Librarian", role=Role.LIBRARIAN)


@pytest.fixture
def admin(manager):
    return manager.users.register("admin@example.com", "secret1", "Adam", "Admin", role=Role.ADMIN)


@pytest.fixture
def book(manager):
    return manager.catalog.add_book(Book("Ulysses", "James Joyce", total_copies=2, isbn="9780199535675"))


@pytest.fixture
def single_copy(manager):
    return manager.catalog.add_book(Book("Sapiens", "Yuval Noah Harari", total_copies=1, isbn="9780099590088"))
