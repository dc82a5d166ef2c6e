import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Set, Union

from config import settings
from booktracker import stats
from booktracker.book import Book
from booktracker.services.document_store import Document, DocumentStore, DocumentStoreError, Subscription

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "books"


class SyncState(str, Enum):
    """Where a book stands relative to the remote collection."""
    LOCAL_ONLY = "local_only"            # changed locally, not (successfully) sent
    PENDING_CONFIRM = "pending_confirm"  # sent, waiting to show up in a snapshot
    CONFIRMED = "confirmed"              # local value matches the server
    CONFLICT = "conflict"                # server kept a different value than our write


class BookNotFoundError(LookupError):
    """Raised when an operation names a book the store does not hold."""


class StoreClosedError(RuntimeError):
    """Raised when a closed store is asked to change or fetch books."""


@dataclass
class WriteResult:
    """Outcome of one remote write or delete."""
    operation: str
    book_id: str
    ok: bool
    error: Optional[str] = None
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "book_id": self.book_id,
            "ok": self.ok,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass
class RetryPolicy:
    """How often a failed remote write is tried again. ``retries=0`` sends once."""
    retries: int = 0
    backoff: float = 0.5

    def delay(self, attempt: int) -> float:
        return self.backoff * (2 ** attempt)


@dataclass
class _Entry:
    book: Book
    state: SyncState = SyncState.LOCAL_ONLY
    in_flight: int = 0
    written: Optional[Dict[str, Any]] = None
    # Earlier writes of this book that no snapshot has echoed yet, oldest first.
    superseded: List[Dict[str, Any]] = field(default_factory=list)
    # Last document seen on the server; None while the server has not shown the book.
    server: Optional[Dict[str, Any]] = None
    # Server values our writes replaced. None stands for "book absent".
    stale: List[Optional[Dict[str, Any]]] = field(default_factory=list)


ChangeCallback = Callable[[List[Book]], None]


class BookStore:
    """The reader's book collection, kept in memory and synchronized with a document store.

    Local changes show up immediately; the matching remote write runs as an
    asyncio task whose ``WriteResult`` the caller may await or ignore. Snapshots
    pushed by the document store are merged book by book according to each
    book's ``SyncState``.

    Use as ``async with BookStore(remote) as store:`` so the initial load and
    the live subscription are set up, and released on exit.
    """

    def __init__(
        self,
        remote: DocumentStore,
        collection: str = DEFAULT_COLLECTION,
        retry_policy: Optional[RetryPolicy] = None,
        optimistic_updates: bool = False,
    ) -> None:
        self.remote = remote
        self.collection = collection
        self.retry_policy = retry_policy or RetryPolicy()
        # When False, update() leaves the local copy alone until the server echoes the change.
        self.optimistic_updates = optimistic_updates
        self._order: List[str] = []
        self._entries: Dict[str, _Entry] = {}
        self._pending_deletes: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._change_callbacks: List[ChangeCallback] = []
        self._subscription: Optional[Subscription] = None
        self._closed = False

    @classmethod
    def from_settings(cls, remote: DocumentStore) -> "BookStore":
        return cls(
            remote,
            collection=settings.books_collection,
            retry_policy=RetryPolicy(retries=settings.write_retries, backoff=settings.write_backoff),
            optimistic_updates=settings.optimistic_updates,
        )

    # ------------------------- Lifecycle ------------------------- #
    async def open(self) -> "BookStore":
        """Load the collection once, then start listening for snapshots."""
        self._check_open()
        await self.load()
        await self.subscribe()
        return self

    async def close(self) -> None:
        """Wait for in-flight remote operations, then release the subscription."""
        if self._closed:
            return
        self._closed = True
        try:
            await self.wait_pending()
        finally:
            if self._subscription is not None:
                await self._subscription.close()
                self._subscription = None
            self._change_callbacks.clear()

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "BookStore":
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def wait_pending(self) -> List[WriteResult]:
        """Wait for every remote operation dispatched so far and return their results."""
        results: List[WriteResult] = []
        seen: Set[asyncio.Task] = set()
        while True:
            pending = [task for task in self._tasks if task not in seen]
            if not pending:
                return results
            seen.update(pending)
            results.extend(await asyncio.gather(*pending))

    # ------------------------- Remote reads ------------------------- #
    async def load(self) -> bool:
        """Fetch the whole remote collection once. Returns False on a transport error."""
        self._check_open()
        try:
            documents = await self.remote.fetch_all(self.collection)
        except DocumentStoreError as exc:
            logger.error("Error getting documents from %s: %s", self.collection, exc)
            return False
        self._reconcile(documents)
        logger.info("Loaded %d books from %s", len(self._order), self.collection)
        return True

    async def subscribe(self) -> bool:
        """Start the standing snapshot listener. Does nothing when already listening."""
        self._check_open()
        if self.subscribed:
            return True
        try:
            self._subscription = await self.remote.subscribe(
                self.collection, self._on_snapshot, self._on_listener_error
            )
        except DocumentStoreError as exc:
            logger.error("Error subscribing to %s: %s", self.collection, exc)
            return False
        return True

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def _on_snapshot(self, documents: List[Document]) -> None:
        if self._closed:
            return
        self._reconcile(documents)

    def _on_listener_error(self, error: Exception) -> None:
        logger.error("Error fetching documents from %s: %s", self.collection, error)

    # ------------------------- Local reads ------------------------- #
    @property
    def books(self) -> List[Book]:
        return [self._entries[book_id].book for book_id in self._order]

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[Book]:
        return iter(self.books)

    def __contains__(self, book_id: object) -> bool:
        return book_id in self._entries

    def get(self, book_id: str) -> Optional[Book]:
        entry = self._entries.get(book_id)
        return entry.book if entry else None

    def index_of(self, book_id: str) -> int:
        try:
            return self._order.index(book_id)
        except ValueError:
            raise BookNotFoundError(f"Book with id {book_id} not found.") from None

    def sync_state(self, book_id: str) -> SyncState:
        return self._require(book_id).state

    def filter(self, author: Optional[str] = None, categories: Optional[Iterable[str]] = None) -> List[Book]:
        return stats.filter_books(self.books, author=author, categories=categories)

    @property
    def pending_operations(self) -> int:
        return len(self._tasks)

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Call ``callback`` with the new book list after every change. Returns the remover."""
        self._change_callbacks.append(callback)

        def remove() -> None:
            if callback in self._change_callbacks:
                self._change_callbacks.remove(callback)

        return remove

    # ------------------------- Mutations ------------------------- #
    def add(self, book: Book) -> "asyncio.Task[WriteResult]":
        """Append ``book`` right away and create its remote document."""
        self._check_ready()
        book.validate()
        if book.id in self._entries:
            raise ValueError(f"Book with id {book.id} already exists.")
        self._order.append(book.id)
        self._entries[book.id] = _Entry(book)
        self._notify_change()
        return self._dispatch_write("add", book)

    def toggle_completion(self, book: Union[Book, str]) -> "asyncio.Task[WriteResult]":
        """Flip the completed flag of the stored book with the same id and save it."""
        self._check_ready()
        entry = self._require(book.id if isinstance(book, Book) else book)
        toggled = entry.book.with_changes(is_completed=not entry.book.is_completed)
        entry.book = toggled
        entry.state = SyncState.LOCAL_ONLY
        self._notify_change()
        return self._dispatch_write("toggle", toggled)

    def update(self, book: Book) -> "asyncio.Task[WriteResult]":
        """Overwrite the remote document of ``book.id`` with every field of ``book``."""
        self._check_ready()
        book.validate()
        entry = self._require(book.id)
        if self.optimistic_updates:
            entry.book = book
            entry.state = SyncState.LOCAL_ONLY
            self._notify_change()
        return self._dispatch_write("update", book)

    def resend(self, book_id: str) -> "asyncio.Task[WriteResult]":
        """Write the local value of a book again, e.g. after a failed write."""
        self._check_ready()
        entry = self._require(book_id)
        return self._dispatch_write("resend", entry.book)

    def delete(self, index: int) -> "asyncio.Task[WriteResult]":
        """Remove the book at ``index`` right away and delete its remote document."""
        self._check_ready()
        if index < 0:
            raise IndexError(f"Position {index} is not in the collection.")
        book_id = self._order.pop(index)
        entry = self._entries.pop(book_id)
        self._pending_deletes[book_id] = self._pending_deletes.get(book_id, 0) + 1
        self._notify_change()
        return self._spawn(self._run_delete(entry.book))

    def delete_by_id(self, book_id: str) -> "asyncio.Task[WriteResult]":
        return self.delete(self.index_of(book_id))

    # ------------------------- Remote writes ------------------------- #
    def _dispatch_write(self, operation: str, book: Book) -> "asyncio.Task[WriteResult]":
        entry = self._entries[book.id]
        document = book.to_document()
        entry.in_flight += 1
        if entry.server != document and entry.server not in entry.stale:
            entry.stale.append(entry.server)
        if entry.written is not None:
            entry.superseded.append(entry.written)
        entry.written = document
        entry.state = SyncState.PENDING_CONFIRM
        return self._spawn(self._run_write(operation, book.id, document))

    def _spawn(self, coro: Awaitable[WriteResult]) -> "asyncio.Task[WriteResult]":
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _with_retry(self, operation: str, book_id: str,
                          call: Callable[[], Awaitable[None]]) -> WriteResult:
        attempt = 0
        while True:
            try:
                await call()
            except DocumentStoreError as exc:
                if attempt >= self.retry_policy.retries:
                    logger.error("Error on %s of book %s: %s", operation, book_id, exc)
                    return WriteResult(operation, book_id, ok=False, error=str(exc), attempts=attempt + 1)
                delay = self.retry_policy.delay(attempt)
                logger.warning("%s of book %s failed (%s), retrying in %.2fs", operation, book_id, exc, delay)
                await asyncio.sleep(delay)
                attempt += 1
            else:
                logger.info("Book %s: %s stored in %s", book_id, operation, self.collection)
                return WriteResult(operation, book_id, ok=True, attempts=attempt + 1)

    async def _run_write(self, operation: str, book_id: str, document: Dict[str, Any]) -> WriteResult:
        result = await self._with_retry(
            operation, book_id, lambda: self.remote.set(self.collection, book_id, document)
        )
        entry = self._entries.get(book_id)
        if entry is None:
            return result
        entry.in_flight = max(entry.in_flight - 1, 0)
        if not result.ok and entry.in_flight == 0 and entry.state == SyncState.PENDING_CONFIRM:
            # The local value is unsent only if it is the one we tried to write.
            unsent = entry.book.to_document() == entry.written
            entry.state = SyncState.LOCAL_ONLY if unsent else SyncState.CONFIRMED
            entry.written = None
            entry.superseded.clear()
            if not unsent:
                entry.stale.clear()
        return result

    async def _run_delete(self, book: Book) -> WriteResult:
        result = await self._with_retry(
            "delete", book.id, lambda: self.remote.delete(self.collection, book.id)
        )
        remaining = self._pending_deletes.get(book.id, 0) - 1
        if remaining > 0:
            self._pending_deletes[book.id] = remaining
        else:
            self._pending_deletes.pop(book.id, None)
        return result

    # ------------------------- Reconciliation ------------------------- #
    def _reconcile(self, documents: Iterable[Document]) -> None:
        incoming: Dict[str, Book] = {}
        for document in documents:
            book = Book.from_document(document.id, document.data)
            if book is None:
                logger.debug("Dropping malformed document %s/%s", self.collection, document.id)
                continue
            incoming[book.id] = book

        order: List[str] = []
        for book_id in self._order:
            entry = self._entries[book_id]
            if self._merge(entry, incoming.pop(book_id, None)):
                order.append(book_id)
            else:
                del self._entries[book_id]

        for book_id, remote_book in incoming.items():
            if book_id in self._pending_deletes:
                continue
            self._entries[book_id] = _Entry(remote_book, SyncState.CONFIRMED, server=remote_book.to_document())
            order.append(book_id)

        self._order = order
        self._notify_change()

    def _merge(self, entry: _Entry, remote: Optional[Book]) -> bool:
        """Fold one server value into a local entry. False means the entry is gone."""
        if entry.state == SyncState.LOCAL_ONLY:
            return True
        remote_document = remote.to_document() if remote is not None else None
        if entry.written is not None and remote_document == entry.written:
            entry.book = remote
            entry.state = SyncState.CONFIRMED
            entry.written = None
            entry.stale.extend(entry.superseded)
            entry.stale = [doc for doc in entry.stale if doc != remote_document]
            entry.superseded.clear()
            entry.server = remote_document
            return True
        if remote_document is not None and remote_document in entry.superseded:
            # Echo of an older write of ours; the latest one has not shown up yet.
            del entry.superseded[:entry.superseded.index(remote_document) + 1]
            return True
        if entry.in_flight > 0:
            # Snapshot taken before our write landed.
            return True
        if remote_document in entry.stale:
            # Older than a write the server acknowledged; a later snapshot may still carry it.
            entry.stale.remove(remote_document)
            return True
        if remote is None:
            # Unconfirmed writes wait for a snapshot that includes them.
            return entry.state == SyncState.PENDING_CONFIRM
        if remote_document == entry.server:
            entry.stale.clear()
        if entry.state == SyncState.PENDING_CONFIRM:
            logger.warning("Book %s was changed elsewhere; keeping the server's version", remote.id)
            # ``written`` is kept: a later snapshot carrying it confirms the write after all.
            entry.state = SyncState.CONFLICT
        elif entry.state != SyncState.CONFLICT:
            entry.state = SyncState.CONFIRMED
            entry.written = None
            entry.superseded.clear()
        entry.book = remote
        entry.server = remote_document
        return True

    # ------------------------- Helpers ------------------------- #
    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("BookStore is closed.")

    def _check_ready(self) -> None:
        self._check_open()
        # Remote writes are scheduled on the running loop; fail before touching local state.
        asyncio.get_running_loop()

    def _require(self, book_id: str) -> _Entry:
        entry = self._entries.get(book_id)
        if entry is None:
            raise BookNotFoundError(f"Book with id {book_id} not found.")
        return entry

    def _notify_change(self) -> None:
        if not self._change_callbacks:
            return
        books = self.books
        for callback in list(self._change_callbacks):
            callback(books)
