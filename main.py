import asyncio
import logging
import subprocess
import sys
from typing import Awaitable, Callable, List, Optional, TypeVar

import typer
from rich.console import Console

from config import settings
from booktracker.book import Book, BookValidationError
from booktracker.services import get_document_store
from booktracker.stats import distinct_authors, get_statistics
from booktracker.store import BookNotFoundError, BookStore, WriteResult
from booktracker.utils.ui_helpers import (
    print_book_detail,
    print_list_result,
    print_names,
    print_stats_result,
    set_output_mode,
)
from booktracker.utils.validators import CATEGORIES, TextValidator

APP_NAME = "Book Tracker CLI"

console = Console()
app = typer.Typer(help=APP_NAME)

T = TypeVar("T")


def run_with_store(operation: Callable[[BookStore], Awaitable[T]]) -> T:
    """Open the configured book store, run ``operation`` against it and close everything."""
    async def runner() -> T:
        async with get_document_store() as remote:
            async with BookStore.from_settings(remote) as store:
                return await operation(store)

    return asyncio.run(runner())


def _report(result: WriteResult, success_message: str) -> None:
    if result.ok:
        print(success_message)
    else:
        print(f"Saved locally, but the remote write failed: {result.error}")


def _fail(message: str) -> None:
    print(f"Error: {message}")
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show sync log messages"),
):
    """Global CLI options (output mode, logging)."""
    if output:
        set_output_mode(output)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("list")
def cli_list(
    author: Optional[str] = typer.Option(None, "--author", "-a", help="Only books by this author"),
    category: Optional[List[str]] = typer.Option(None, "--category", "-c", help="Only these categories (repeatable)"),
):
    """List the books. Positions refer to the full list, also when filtered."""
    async def op(store: BookStore):
        wanted = {book.id for book in store.filter(author=author, categories=category)}
        return [(position, book) for position, book in enumerate(store.books, 1) if book.id in wanted]

    print_list_result(run_with_store(op))


@app.command("authors")
def cli_authors():
    """List every author in the library."""
    async def op(store: BookStore):
        return distinct_authors(store.books)

    authors = run_with_store(op)
    if not authors:
        print("No authors in library.")
        return
    print_names("Authors", authors)


@app.command("categories")
def cli_categories():
    """List the known categories."""
    print_names("Categories", CATEGORIES)


@app.command("add")
def cli_add(
    author: str = typer.Option(..., "--author", prompt="Author's Name"),
    title: str = typer.Option(..., "--title", prompt="Book's Name"),
    total_pages: str = typer.Option(..., "--total-pages", prompt="Total Pages"),
    read_pages: str = typer.Option(..., "--read-pages", prompt="Read Pages"),
    review: int = typer.Option(3, "--review", help="Review from 1 to 5"),
    completed: bool = typer.Option(False, "--completed/--in-progress"),
    category: str = typer.Option(CATEGORIES[0], "--category", help="One of the known categories"),
):
    """Add a book to the library."""
    if not TextValidator.is_numeric(total_pages) or not TextValidator.is_numeric(read_pages):
        _fail("Page counts must be whole numbers.")
    if category not in CATEGORIES:
        _fail(f"Unknown category '{category}'. Choose one of: {', '.join(CATEGORIES)}")

    book = Book(
        author_name=author,
        book_name=title,
        total_pages=int(total_pages),
        read_pages=int(read_pages),
        review=review,
        is_completed=completed,
        category=category,
    )

    async def op(store: BookStore):
        return await store.add(book)

    try:
        result = run_with_store(op)
    except BookValidationError as e:
        _fail(str(e))
        return
    _report(result, f"Successfully added: {book.book_name} by {book.author_name} ({book.id})")


@app.command("show")
def cli_show(book_id: str):
    """Show the details of one book."""
    async def op(store: BookStore):
        book = store.get(book_id)
        return (book, store.sync_state(book_id).value) if book else None

    found = run_with_store(op)
    if not found:
        print(f"Book with id {book_id} not found.")
        return
    book, state = found
    print_book_detail(book, state)


@app.command("edit")
def cli_edit(
    book_id: str,
    author: Optional[str] = typer.Option(None, "--author"),
    title: Optional[str] = typer.Option(None, "--title"),
    total_pages: Optional[int] = typer.Option(None, "--total-pages"),
    read_pages: Optional[int] = typer.Option(None, "--read-pages"),
    review: Optional[int] = typer.Option(None, "--review"),
    completed: Optional[bool] = typer.Option(None, "--completed/--in-progress"),
    category: Optional[str] = typer.Option(None, "--category"),
):
    """Change the details of a book. The whole book is saved again."""
    changes = {
        "author_name": author,
        "book_name": title,
        "total_pages": total_pages,
        "read_pages": read_pages,
        "review": review,
        "is_completed": completed,
        "category": category,
    }
    changes = {key: value for key, value in changes.items() if value is not None}
    if not changes:
        print("Nothing to update. Provide at least one field to change.")
        return
    if category is not None and category not in CATEGORIES:
        _fail(f"Unknown category '{category}'. Choose one of: {', '.join(CATEGORIES)}")

    async def op(store: BookStore):
        book = store.get(book_id)
        if book is None:
            raise BookNotFoundError(book_id)
        edited = book.with_changes(**changes)
        return edited, await store.update(edited)

    try:
        edited, result = run_with_store(op)
    except BookNotFoundError:
        print(f"Book with id {book_id} not found.")
        return
    except BookValidationError as e:
        _fail(str(e))
        return
    _report(result, f"Saved changes to: {edited.book_name} by {edited.author_name}")


@app.command("toggle")
def cli_toggle(book_id: str):
    """Mark a book as completed, or back as in progress."""
    async def op(store: BookStore):
        result = await store.toggle_completion(book_id)
        return store.get(book_id), result

    try:
        book, result = run_with_store(op)
    except BookNotFoundError:
        print(f"Book with id {book_id} not found.")
        return
    status = "Completed" if book.is_completed else "In Progress"
    _report(result, f"Marked as {status}: {book.book_name}")


@app.command("remove")
def cli_remove(position: int = typer.Argument(..., help="Position shown by 'list' (starting at 1)")):
    """Remove the book at the given list position."""
    if position < 1:
        _fail("Position must be 1 or greater.")

    async def op(store: BookStore):
        book = store.books[position - 1]
        return book, await store.delete(position - 1)

    try:
        book, result = run_with_store(op)
    except IndexError:
        print(f"No book at position {position}.")
        return
    _report(result, f"Removed: {book.book_name} by {book.author_name}")


@app.command("stats")
def cli_stats(top: int = typer.Option(settings.top_n, "--top", "-n", help="How many authors/categories to rank")):
    """Show reading statistics."""
    async def op(store: BookStore):
        return get_statistics(store.books, top_n=top)

    print_stats_result(run_with_store(op))


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Run the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = port or settings.api_port
    console.print(f"[bold green]Starting API on http://{host}:{port}[/]")
    cmd = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    try:
        subprocess.run(cmd, check=False)
    except KeyboardInterrupt:
        console.print("[dim]Server stopped.[/]")


def main():
    app()


if __name__ == "__main__":
    main()
