import os
import json
from typing import Any, Dict, List, Optional, Sequence, Tuple
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "BOOKS_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _progress_text(book: Any) -> str:
    progress = getattr(book, "reading_progress", None)
    return f"{progress}% Read" if progress is not None else ""


def print_list_result(rows: Sequence[Tuple[int, Any]]) -> None:
    """Print numbered books in the current output mode.
    - plain: '3. [x] Title by Author - 42% Read' lines, or 'No books in library.'
    - json: array of book dicts with their position
    - rich: Rich table
    """
    mode = get_output_mode()

    if not rows:
        print("No books in library.")
        return

    if mode == "json":
        payload = [dict(book.to_dict(), position=position) for position, book in rows]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("#", style="magenta", no_wrap=True)
        table.add_column("", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Category", style="white")
        table.add_column("Progress", style="blue")
        for position, book in rows:
            table.add_row(
                str(position),
                "[green]✓[/]" if book.is_completed else "",
                book.book_name,
                book.author_name,
                book.category,
                _progress_text(book),
            )
        _console.print(table)
    else:
        for position, book in rows:
            mark = "[x]" if book.is_completed else "[ ]"
            line = f"{position}. {mark} {book.book_name} by {book.author_name}"
            progress = _progress_text(book)
            if progress:
                line += f" - {progress}"
            print(line)


def print_book_detail(book: Any, sync_state: Optional[str] = None) -> None:
    mode = get_output_mode()
    if mode == "json":
        payload = book.to_dict()
        if sync_state is not None:
            payload["sync_state"] = sync_state
        print(json.dumps(payload, ensure_ascii=False))
        return

    lines = [
        f"Author's Name: {book.author_name}",
        f"Book's Name: {book.book_name}",
        f"Total Pages: {book.total_pages}",
        f"Read Pages: {book.read_pages}",
        f"Review: {book.review}",
        f"Status: {'Completed' if book.is_completed else 'In Progress'}",
        f"Category: {book.category}",
        f"ID: {book.id}",
    ]
    if sync_state is not None:
        lines.append(f"Sync: {sync_state}")
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title=f"📖 {book.book_name}", border_style="blue"))
    else:
        print("\n".join(lines))


def _print_bar_chart(title: str, data: Dict[str, int], color: str) -> None:
    _console.print(f"[bold]{title}[/]")
    if not data:
        _console.print("[dim]  (no data)[/]")
        return
    width = max(len(label) for label in data)
    for label, count in data.items():
        _console.print(f"  {label.ljust(width)} [{color}]{'█' * count}[/] {count}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode.
    - plain: one 'Label: value' line per figure, then the top lists
    - json: JSON object
    - rich: Panel with the key figures and bar charts for the top lists
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
        return

    total = stats.get("total_books", 0)
    authors = stats.get("unique_authors", 0)
    completed = stats.get("completed_books", 0)
    pages = stats.get("pages_read", 0)
    top_authors = stats.get("top_authors", {})
    top_categories = stats.get("top_categories", {})

    if mode == "rich":
        content = (
            f"[bold]Total Books:[/] {total}\n[bold]Unique Authors:[/] {authors}\n"
            f"[bold]Completed:[/] {completed}\n[bold]Pages Read:[/] {pages}"
        )
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
        _print_bar_chart("Authors You Read the Most", top_authors, "blue")
        _print_bar_chart("Categories You Read the Most", top_categories, "green")
    else:
        print(f"Total Books: {total}")
        print(f"Unique Authors: {authors}")
        print(f"Completed: {completed}")
        print(f"Pages Read: {pages}")
        print("Authors You Read the Most:")
        for name, count in top_authors.items():
            print(f"  {name}: {count}")
        print("Categories You Read the Most:")
        for name, count in top_categories.items():
            print(f"  {name}: {count}")


def print_names(title: str, names: List[str]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(names, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, header_style="bold cyan")
        table.add_column("Name", style="white")
        for name in names:
            table.add_row(name)
        _console.print(table)
    else:
        for name in names:
            print(name)
