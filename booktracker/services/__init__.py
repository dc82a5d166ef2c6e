"""Book Tracker - Services Package

This package contains the document store backends the book collection
synchronizes with:
- In-memory store (tests, throwaway sessions)
- SQLite store (local persistent library)
- Cloud Firestore REST store (hosted library)
"""
from typing import Optional

from config import settings
from booktracker.services.document_store import (
    Document,
    DocumentStore,
    DocumentStoreError,
    InMemoryDocumentStore,
    Subscription,
)

BACKENDS = ("memory", "sqlite", "firestore")


def get_document_store(backend: Optional[str] = None) -> DocumentStore:
    """Build the document store selected by ``backend`` or ``settings.books_backend``."""
    name = (backend or settings.books_backend or "").lower().strip()
    if name == "memory":
        return InMemoryDocumentStore()
    if name == "sqlite":
        from booktracker.services.sqlite_store import SQLiteDocumentStore
        return SQLiteDocumentStore(settings.database_file)
    if name == "firestore":
        from booktracker.services.firestore import FirestoreDocumentStore
        return FirestoreDocumentStore(
            project_id=settings.firestore_project_id,
            database=settings.firestore_database,
            api_key=settings.firestore_api_key,
            token=settings.firestore_token,
            timeout=settings.firestore_timeout,
            poll_interval=settings.firestore_poll_interval,
        )
    raise ValueError(f"Unknown document backend: {name!r}. Use one of: {', '.join(BACKENDS)}")


__all__ = [
    "BACKENDS",
    "Document",
    "DocumentStore",
    "DocumentStoreError",
    "InMemoryDocumentStore",
    "Subscription",
    "get_document_store",
]
