import asyncio
from unittest.mock import AsyncMock

import pytest

from config import settings
from booktracker.book import BookValidationError
from booktracker.services.document_store import Document, DocumentStoreError, InMemoryDocumentStore
from booktracker.services.sqlite_store import SQLiteDocumentStore
from booktracker.store import (
    BookNotFoundError,
    BookStore,
    RetryPolicy,
    StoreClosedError,
    SyncState,
)


async def settle():
    # Let scheduled snapshot deliveries run.
    for _ in range(3):
        await asyncio.sleep(0)


def test_add_is_visible_before_remote_write(remote, make_book):
    async def scenario():
        async with BookStore(remote) as store:
            book = make_book()
            task = store.add(book)
            assert store.books == [book]
            assert store.sync_state(book.id) == SyncState.PENDING_CONFIRM
            assert book.id not in remote.raw("books")

            result = await task
            await settle()
            assert result.ok
            assert result.operation == "add"
            assert store.sync_state(book.id) == SyncState.CONFIRMED
            assert remote.raw("books")[book.id] == book.to_document()

    asyncio.run(scenario())


def test_orwell_scenario(remote, make_book):
    async def scenario():
        async with BookStore(remote) as store:
            before = len(store)
            book = make_book(author_name="George Orwell", book_name="1984", total_pages=328,
                             read_pages=0, review=5, is_completed=False, category="Fiction")
            await store.add(book)
            await settle()
            assert len(store) == before + 1
            assert store.get(book.id).reading_progress == 0

    asyncio.run(scenario())


def test_add_rejects_invalid_and_duplicate_books(remote, make_book):
    async def scenario():
        async with BookStore(remote) as store:
            with pytest.raises(BookValidationError):
                store.add(make_book(book_name=""))
            assert len(store) == 0

            book = make_book()
            await store.add(book)
            with pytest.raises(ValueError, match="already exists"):
                store.add(book)
            assert len(store) == 1

    asyncio.run(scenario())


def test_mutation_needs_running_loop(make_book):
    store = BookStore(InMemoryDocumentStore())
    with pytest.raises(RuntimeError):
        store.add(make_book())
    assert len(store) == 0


def test_delete_keeps_order(remote, make_book):
    async def scenario():
        async with BookStore(remote) as store:
            books = [make_book(book_name=name) for name in ("1984", "Animal Farm", "Homage to Catalonia")]
            for book in books:
                store.add(book)
            await store.wait_pending()

            task = store.delete(1)
            assert store.books == [books[0], books[2]]
            result = await task
            await settle()
            assert result.ok
            assert store.books == [books[0], books[2]]
            assert set(remote.raw("books")) == {books[0].id, books[2].id}

            with pytest.raises(IndexError):
                store.delete(5)
            with pytest.raises(IndexError):
                store.delete(-1)
            assert store.books == [books[0], books[2]]

    asyncio.run(scenario())


def test_delete_by_id_unknown(remote):
    async def scenario():
        async with BookStore(remote) as store:
            with pytest.raises(BookNotFoundError):
                store.delete_by_id("MISSING")

    asyncio.run(scenario())


def test_snapshot_during_delete_does_not_resurrect(remote, make_book, monkeypatch):
    async def scenario():
        async with BookStore(remote) as store:
            first = make_book()
            await store.add(first)

            gate = asyncio.Event()
            real_delete = remote.delete

            async def held_delete(collection, key):
                await gate.wait()
                await real_delete(collection, key)

            monkeypatch.setattr(remote, "delete", held_delete)
            delete_task = store.delete(0)

            # This snapshot still carries the deleted book.
            await store.add(make_book(book_name="Animal Farm"))
            await settle()
            assert first.id not in store

            gate.set()
            assert (await delete_task).ok
            await settle()
            assert first.id not in store
            assert len(store) == 1

    asyncio.run(scenario())


def test_failed_delete_comes_back_with_next_snapshot(remote, make_book, monkeypatch):
    async def scenario():
        async with BookStore(remote) as store:
            first = make_book()
            await store.add(first)
            monkeypatch.setattr(remote, "delete", AsyncMock(side_effect=DocumentStoreError("offline")))

            result = await store.delete(0)
            assert not result.ok
            assert result.error == "offline"
            assert first.id not in store

            await store.add(make_book(book_name="Animal Farm"))
            await settle()
            assert first.id in store

    asyncio.run(scenario())


def test_toggle_by_id(remote, make_book):
    async def scenario():
        async with BookStore(remote) as store:
            book = make_book()
            await store.add(book)

            task = store.toggle_completion(book.id)
            assert store.get(book.id).is_completed is True
            result = await task
            await settle()
            assert result.ok
            assert remote.raw("books")[book.id]["isCompleted"] is True
            assert store.sync_state(book.id) == SyncState.CONFIRMED

            # A stale copy of the book still addresses the stored one.
            await store.toggle_completion(book)
            await settle()
            assert store.get(book.id).is_completed is False

            with pytest.raises(BookNotFoundError):
                store.toggle_completion("MISSING")

    asyncio.run(scenario())


def test_quick_toggles_end_confirmed(remote, make_book):
    async def scenario():
        async with BookStore(remote) as store:
            book = make_book()
            await store.add(book)
            first = store.toggle_completion(book.id)
            second = store.toggle_completion(book.id)
            results = await asyncio.gather(first, second)
            await settle()
            assert all(result.ok for result in results)
            assert store.get(book.id).is_completed is False
            assert store.sync_state(book.id) == SyncState.CONFIRMED

    asyncio.run(scenario())


def test_update_waits_for_server_by_default(remote, make_book):
    async def scenario():
        async with BookStore(remote) as store:
            book = make_book()
            await store.add(book)
            edited = book.with_changes(read_pages=100)

            task = store.update(edited)
            assert store.get(book.id).read_pages == 0
            assert (await task).ok
            await settle()
            assert store.get(book.id) == edited
            assert store.sync_state(book.id) == SyncState.CONFIRMED

    asyncio.run(scenario())


def test_optimistic_update(remote, make_book):
    async def scenario():
        async with BookStore(remote, optimistic_updates=True) as store:
            book = make_book()
            await store.add(book)
            edited = book.with_changes(read_pages=100)

            task = store.update(edited)
            assert store.get(book.id) == edited
            await task

    asyncio.run(scenario())


def test_update_unknown_book(remote, make_book):
    async def scenario():
        async with BookStore(remote) as store:
            with pytest.raises(BookNotFoundError):
                store.update(make_book())

    asyncio.run(scenario())


def test_failed_write_stays_local_and_can_be_resent(remote, make_book, monkeypatch):
    async def scenario():
        async with BookStore(remote) as store:
            monkeypatch.setattr(remote, "set", AsyncMock(side_effect=DocumentStoreError("boom")))
            book = make_book()
            result = await store.add(book)
            await settle()
            assert not result.ok
            assert result.error == "boom"
            assert store.get(book.id) == book
            assert store.sync_state(book.id) == SyncState.LOCAL_ONLY

            monkeypatch.undo()
            # Snapshots do not drop books that never reached the server.
            await remote.set("books", "OTHER", make_book(book_name="Animal Farm").to_document())
            await settle()
            assert book.id in store

            assert (await store.resend(book.id)).ok
            await settle()
            assert store.sync_state(book.id) == SyncState.CONFIRMED
            assert book.id in remote.raw("books")

    asyncio.run(scenario())


def test_write_retried_with_policy(remote, make_book, monkeypatch):
    async def scenario():
        calls = []
        real_set = remote.set

        async def flaky_set(collection, key, data):
            calls.append(key)
            if len(calls) == 1:
                raise DocumentStoreError("temporary")
            await real_set(collection, key, data)

        monkeypatch.setattr(remote, "set", flaky_set)
        async with BookStore(remote, retry_policy=RetryPolicy(retries=2, backoff=0)) as store:
            result = await store.add(make_book())
            assert result.ok
            assert result.attempts == 2
            assert len(calls) == 2

    asyncio.run(scenario())


def test_write_gives_up_after_retries(remote, make_book, monkeypatch):
    async def scenario():
        failing = AsyncMock(side_effect=DocumentStoreError("down"))
        monkeypatch.setattr(remote, "set", failing)
        async with BookStore(remote, retry_policy=RetryPolicy(retries=1, backoff=0)) as store:
            result = await store.add(make_book())
            assert not result.ok
            assert result.attempts == 2
            assert failing.await_count == 2

    asyncio.run(scenario())


def test_retry_policy_backoff():
    policy = RetryPolicy(retries=3, backoff=0.5)
    assert [policy.delay(n) for n in range(3)] == [0.5, 1.0, 2.0]


def test_server_value_wins_conflict(remote, make_book, monkeypatch):
    async def scenario():
        async with BookStore(remote) as store:
            book = make_book()
            await store.add(book)

            real_set = remote.set

            async def server_rewrites(collection, key, data):
                await real_set(collection, key, dict(data, review=1))

            monkeypatch.setattr(remote, "set", server_rewrites)
            await store.update(book.with_changes(read_pages=10))
            await settle()
            assert store.sync_state(book.id) == SyncState.CONFLICT
            assert store.get(book.id).review == 1
            assert store.get(book.id).read_pages == 10

    asyncio.run(scenario())


def test_snapshot_older_than_confirmed_write_is_ignored(remote, make_book):
    async def scenario():
        async with BookStore(remote) as store:
            book = make_book()
            await store.add(book)
            await settle()
            before_toggle = [Document(book.id, book.to_document())]

            assert (await store.toggle_completion(book.id)).ok
            await settle()
            store._on_snapshot(before_toggle)
            assert store.get(book.id).is_completed is True
            assert store.sync_state(book.id) == SyncState.CONFIRMED

            # Seen again, the old value is a real change made elsewhere.
            store._on_snapshot(before_toggle)
            assert store.get(book.id).is_completed is False

    asyncio.run(scenario())


def test_snapshot_older_than_add_keeps_book(remote, make_book):
    async def scenario():
        async with BookStore(remote) as store:
            book = make_book()
            await store.add(book)
            await settle()
            assert store.sync_state(book.id) == SyncState.CONFIRMED

            store._on_snapshot([])
            assert book.id in store

    asyncio.run(scenario())


def test_snapshot_older_than_acknowledged_update_is_not_a_conflict(remote, make_book, monkeypatch):
    async def scenario():
        async with BookStore(remote) as store:
            book = make_book()
            await store.add(book)
            await settle()
            before_update = [Document(book.id, book.to_document())]
            edited = book.with_changes(read_pages=50)

            # Acknowledged, but no snapshot carries the new value yet.
            monkeypatch.setattr(remote, "set", AsyncMock())
            assert (await store.update(edited)).ok
            await settle()
            assert store.sync_state(book.id) == SyncState.PENDING_CONFIRM

            store._on_snapshot(before_update)
            assert store.sync_state(book.id) == SyncState.PENDING_CONFIRM
            assert store.get(book.id) == book

            store._on_snapshot([Document(book.id, edited.to_document())])
            assert store.sync_state(book.id) == SyncState.CONFIRMED
            assert store.get(book.id) == edited

    asyncio.run(scenario())


def test_changes_from_other_clients(remote, make_book):
    async def scenario():
        async with BookStore(remote) as store:
            mine = make_book()
            await store.add(mine)

            theirs = make_book(author_name="Stephen King", book_name="It", category="Horror")
            await remote.set("books", theirs.id, theirs.to_document())
            await settle()
            assert store.get(theirs.id) == theirs
            assert store.sync_state(theirs.id) == SyncState.CONFIRMED
            assert [book.id for book in store.books] == [mine.id, theirs.id]

            await remote.delete("books", mine.id)
            await settle()
            assert mine.id not in store

    asyncio.run(scenario())


def test_malformed_documents_are_dropped(make_book):
    good = make_book()
    bad = make_book(book_name="Broken").to_document()
    del bad["review"]
    remote = InMemoryDocumentStore({"books": {good.id: good.to_document(), "BROKEN": bad}})

    async def scenario():
        async with BookStore(remote) as store:
            await settle()
            assert store.books == [good]
            assert "BROKEN" not in store

    asyncio.run(scenario())


def test_load_failure_is_reported(remote, monkeypatch):
    monkeypatch.setattr(remote, "fetch_all", AsyncMock(side_effect=DocumentStoreError("offline")))
    store = BookStore(remote)
    assert asyncio.run(store.load()) is False
    assert len(store) == 0


def test_on_change_callback(remote, make_book):
    async def scenario():
        seen = []
        async with BookStore(remote) as store:
            remove = store.on_change(lambda books: seen.append(len(books)))
            await store.add(make_book())
            assert seen[0] == 1
            remove()
            count = len(seen)
            await store.add(make_book())
            assert len(seen) == count

    asyncio.run(scenario())


def test_close_waits_and_unsubscribes(remote, make_book):
    async def scenario():
        store = BookStore(remote)
        await store.open()
        assert store.subscribed
        book = make_book()
        task = store.add(book)
        await store.close()
        assert task.done()
        assert book.id in remote.raw("books")
        assert store.closed
        assert not store.subscribed
        await store.close()
        with pytest.raises(StoreClosedError):
            store.add(make_book())

    asyncio.run(scenario())


def test_round_trip_through_sqlite(tmp_path, make_book):
    db_file = str(tmp_path / "books.db")
    books = [make_book(), make_book(author_name="Stephen King", book_name="It", category="Horror")]

    async def write():
        async with SQLiteDocumentStore(db_file) as remote:
            async with BookStore(remote) as store:
                for book in books:
                    store.add(book)

    async def read():
        async with SQLiteDocumentStore(db_file) as remote:
            async with BookStore(remote) as store:
                return store.books

    asyncio.run(write())
    assert asyncio.run(read()) == books


def test_from_settings(remote, monkeypatch):
    monkeypatch.setattr(settings, "books_collection", "shelf")
    monkeypatch.setattr(settings, "write_retries", 2)
    monkeypatch.setattr(settings, "write_backoff", 0.1)
    monkeypatch.setattr(settings, "optimistic_updates", True)
    store = BookStore.from_settings(remote)
    assert store.collection == "shelf"
    assert store.retry_policy == RetryPolicy(retries=2, backoff=0.1)
    assert store.optimistic_updates is True
