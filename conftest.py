import pytest

from config import settings
from booktracker.book import Book
from booktracker.services.document_store import InMemoryDocumentStore


@pytest.fixture
def remote():
    return InMemoryDocumentStore()


@pytest.fixture
def make_book():
    """Factory for valid books; keyword arguments override the defaults."""
    def _make(**overrides):
        values = dict(
            author_name="George Orwell",
            book_name="1984",
            total_pages=328,
            read_pages=0,
            review=5,
            is_completed=False,
            category="Fiction",
        )
        values.update(overrides)
        return Book(**values)

    return _make


@pytest.fixture
def sqlite_settings(tmp_path, monkeypatch):
    # Every test gets its own database file
    db_file = str(tmp_path / "books_test.db")
    monkeypatch.setattr(settings, "books_backend", "sqlite")
    monkeypatch.setattr(settings, "database_file", db_file)
    monkeypatch.setattr(settings, "write_retries", 0)
    return db_file
