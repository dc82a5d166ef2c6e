import asyncio
import json
import logging
import os
import sqlite3
from typing import Any, Dict, List, Optional

from booktracker.services.document_store import (
    Document,
    DocumentStore,
    DocumentStoreError,
    ErrorCallback,
    ListenerRegistry,
    SnapshotCallback,
    Subscription,
)

logger = logging.getLogger(__name__)


class SQLiteDocumentStore(DocumentStore):
    """Document collections kept in a local SQLite file.

    Each document is one row holding its fields as JSON. Listeners hear about
    writes made through this instance.
    """

    def __init__(self, db_file: str = "books.db") -> None:
        self.db_file = db_file
        self._listeners = ListenerRegistry()
        self._initialized = False
        self._closed = False

    # ------------------------- Connection helpers ------------------------- #
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_file)
        conn.row_factory = sqlite3.Row
        return conn

    def _create_tables(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.db_file))
        os.makedirs(directory, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (collection, doc_id)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection)")
            conn.commit()
        finally:
            conn.close()

    def _ensure_initialized(self) -> None:
        if self._closed:
            raise DocumentStoreError("Document store is closed.")
        if not self._initialized:
            self._create_tables()
            self._initialized = True

    # ------------------------- Blocking operations ------------------------- #
    def _set_sync(self, collection: str, key: str, data: Dict[str, Any]) -> None:
        self._ensure_initialized()
        conn = self._connect()
        try:
            # Upsert keeps the original rowid, so the collection stays in insertion order.
            conn.execute("""
                INSERT INTO documents (collection, doc_id, data) VALUES (?, ?, ?)
                ON CONFLICT(collection, doc_id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = CURRENT_TIMESTAMP
            """, (collection, key, json.dumps(data, ensure_ascii=False)))
            conn.commit()
        finally:
            conn.close()

    def _delete_sync(self, collection: str, key: str) -> None:
        self._ensure_initialized()
        conn = self._connect()
        try:
            conn.execute("DELETE FROM documents WHERE collection = ? AND doc_id = ?", (collection, key))
            conn.commit()
        finally:
            conn.close()

    def _fetch_all_sync(self, collection: str) -> List[Document]:
        self._ensure_initialized()
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT doc_id, data FROM documents WHERE collection = ? ORDER BY rowid",
                (collection,),
            )
            documents = []
            for row in cursor.fetchall():
                try:
                    data = json.loads(row["data"])
                except json.JSONDecodeError:
                    logger.warning("Skipping unreadable document %s/%s", collection, row["doc_id"])
                    continue
                documents.append(Document(row["doc_id"], data))
            return documents
        finally:
            conn.close()

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (sqlite3.Error, OSError) as exc:
            raise DocumentStoreError(f"SQLite operation failed: {exc}") from exc

    async def _notify(self, collection: str) -> None:
        if not self._listeners.has_listeners(collection):
            return
        try:
            snapshot = await self._run(self._fetch_all_sync, collection)
        except DocumentStoreError as exc:
            logger.error("Could not build snapshot of %s: %s", collection, exc)
            self._listeners.schedule_error(collection, exc)
            return
        self._listeners.schedule(collection, snapshot)

    # ------------------------- DocumentStore API ------------------------- #
    async def set(self, collection: str, key: str, data: Dict[str, Any]) -> None:
        await self._run(self._set_sync, collection, key, data)
        await self._notify(collection)

    async def delete(self, collection: str, key: str) -> None:
        await self._run(self._delete_sync, collection, key)
        await self._notify(collection)

    async def fetch_all(self, collection: str) -> List[Document]:
        return await self._run(self._fetch_all_sync, collection)

    async def subscribe(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        snapshot = await self._run(self._fetch_all_sync, collection)
        listener = self._listeners.add(collection, on_snapshot, on_error)
        self._listeners.schedule(collection, snapshot, only=listener)

        async def _release() -> None:
            self._listeners.remove(collection, listener)

        return Subscription(collection, _release)

    async def close(self) -> None:
        self._closed = True
        self._listeners.clear()
