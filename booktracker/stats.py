from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

from booktracker.book import Book

DEFAULT_TOP_N = 5


def _top_n(values: Iterable[str], n: int) -> Dict[str, int]:
    """Count ``values`` and keep the ``n`` most frequent, ties broken by key."""
    if n <= 0:
        return {}
    counts = Counter(values)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return dict(ranked[:n])


def top_authors(books: Iterable[Book], n: int = DEFAULT_TOP_N) -> Dict[str, int]:
    """Authors read the most, highest count first."""
    return _top_n((book.author_name for book in books), n)


def top_categories(books: Iterable[Book], n: int = DEFAULT_TOP_N) -> Dict[str, int]:
    """Categories read the most, highest count first."""
    return _top_n((book.category for book in books), n)


def distinct_authors(books: Iterable[Book]) -> List[str]:
    return sorted({book.author_name for book in books})


def filter_books(
    books: Iterable[Book],
    author: Optional[str] = None,
    categories: Optional[Iterable[str]] = None,
) -> List[Book]:
    """Client-side filtering of the collection by author and/or category set.

    An empty or missing ``categories`` means every category.
    """
    wanted = set(categories) if categories else None
    return [
        book for book in books
        if (author is None or book.author_name == author)
        and (wanted is None or book.category in wanted)
    ]


def get_statistics(books: Iterable[Book], top_n: int = DEFAULT_TOP_N) -> Dict[str, Any]:
    """Summary figures for the statistics screen."""
    books = list(books)
    return {
        "total_books": len(books),
        "unique_authors": len({book.author_name for book in books}),
        "completed_books": sum(1 for book in books if book.is_completed),
        "pages_read": sum(book.read_pages for book in books),
        "top_authors": top_authors(books, top_n),
        "top_categories": top_categories(books, top_n),
    }
