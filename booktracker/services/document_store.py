import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Document:
    """One stored record: a string key and its field mapping."""
    id: str
    data: Dict[str, Any] = field(default_factory=dict)


SnapshotCallback = Callable[[List[Document]], None]
ErrorCallback = Callable[[Exception], None]


class DocumentStoreError(Exception):
    """Raised by document store backends for any storage or transport failure."""
    pass


class Subscription:
    """Handle for a standing snapshot listener. ``close()`` releases it."""

    def __init__(self, collection: str, on_close: Callable[[], Awaitable[None]]) -> None:
        self.collection = collection
        self._on_close = on_close
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    async def close(self) -> None:
        if not self._active:
            return
        self._active = False
        await self._on_close()


class DocumentStore(ABC):
    """Contract of a remote document collection.

    Implementations deliver snapshots as complete copies of the collection,
    never deltas, and report failures as ``DocumentStoreError``.
    """

    @abstractmethod
    async def set(self, collection: str, key: str, data: Dict[str, Any]) -> None:
        """Create or replace the document stored under ``key``."""

    @abstractmethod
    async def delete(self, collection: str, key: str) -> None:
        """Delete the document stored under ``key``. Missing keys are not an error."""

    @abstractmethod
    async def fetch_all(self, collection: str) -> List[Document]:
        """Return every document in ``collection``."""

    @abstractmethod
    async def subscribe(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Start delivering snapshots of ``collection``, the first one right away."""

    async def close(self) -> None:
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


@dataclass(eq=False)
class _Listener:
    on_snapshot: SnapshotCallback
    on_error: Optional[ErrorCallback] = None
    active: bool = True


class ListenerRegistry:
    """Keeps snapshot listeners per collection and hands snapshots to them on the event loop."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[_Listener]] = defaultdict(list)

    def add(self, collection: str, on_snapshot: SnapshotCallback,
            on_error: Optional[ErrorCallback] = None) -> _Listener:
        listener = _Listener(on_snapshot, on_error)
        self._listeners[collection].append(listener)
        return listener

    def remove(self, collection: str, listener: _Listener) -> None:
        listener.active = False
        try:
            self._listeners[collection].remove(listener)
        except ValueError:
            pass

    def has_listeners(self, collection: str) -> bool:
        return bool(self._listeners.get(collection))

    def clear(self) -> None:
        for listeners in self._listeners.values():
            for listener in listeners:
                listener.active = False
        self._listeners.clear()

    def schedule(self, collection: str, snapshot: List[Document],
                 only: Optional[_Listener] = None) -> None:
        loop = asyncio.get_running_loop()
        targets = [only] if only is not None else list(self._listeners.get(collection, []))
        for listener in targets:
            loop.call_soon(self._deliver, listener, snapshot)

    def schedule_error(self, collection: str, error: Exception) -> None:
        loop = asyncio.get_running_loop()
        for listener in list(self._listeners.get(collection, [])):
            if listener.on_error is not None:
                loop.call_soon(self._deliver_error, listener, error)

    @staticmethod
    def _deliver(listener: _Listener, snapshot: List[Document]) -> None:
        if listener.active:
            listener.on_snapshot(snapshot)

    @staticmethod
    def _deliver_error(listener: _Listener, error: Exception) -> None:
        if listener.active and listener.on_error is not None:
            listener.on_error(error)


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed document store. Snapshots are delivered asynchronously on the running loop."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for name, docs in (initial or {}).items():
            self._collections[name] = {key: copy.deepcopy(data) for key, data in docs.items()}
        self._listeners = ListenerRegistry()
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise DocumentStoreError("Document store is closed.")

    def _snapshot(self, collection: str) -> List[Document]:
        docs = self._collections.get(collection, {})
        return [Document(key, copy.deepcopy(data)) for key, data in docs.items()]

    def raw(self, collection: str) -> Dict[str, Dict[str, Any]]:
        """Copy of the stored documents, for inspection."""
        return copy.deepcopy(self._collections.get(collection, {}))

    async def set(self, collection: str, key: str, data: Dict[str, Any]) -> None:
        self._check_open()
        self._collections.setdefault(collection, {})[key] = copy.deepcopy(data)
        logger.debug("Stored %s/%s", collection, key)
        self._listeners.schedule(collection, self._snapshot(collection))

    async def delete(self, collection: str, key: str) -> None:
        self._check_open()
        self._collections.get(collection, {}).pop(key, None)
        logger.debug("Deleted %s/%s", collection, key)
        self._listeners.schedule(collection, self._snapshot(collection))

    async def fetch_all(self, collection: str) -> List[Document]:
        self._check_open()
        return self._snapshot(collection)

    async def subscribe(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        self._check_open()
        listener = self._listeners.add(collection, on_snapshot, on_error)
        self._listeners.schedule(collection, self._snapshot(collection), only=listener)

        async def _release() -> None:
            self._listeners.remove(collection, listener)

        return Subscription(collection, _release)

    async def close(self) -> None:
        self._closed = True
        self._listeners.clear()
