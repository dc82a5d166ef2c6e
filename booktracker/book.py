from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from booktracker.utils.validators import (
    CATEGORIES,
    MAX_REVIEW,
    MIN_REVIEW,
    BookFieldValidator,
    TextValidator,
    is_int,
)

# Document field name -> expected JSON type.
DOCUMENT_FIELDS: Dict[str, type] = {
    "authorName": str,
    "bookName": str,
    "totalPages": int,
    "readPages": int,
    "review": int,
    "isCompleted": bool,
    "category": str,
}


class BookValidationError(ValueError):
    """Raised when a book is not fit to be added or saved."""

    def __init__(self, problems: List[str]) -> None:
        self.problems = problems
        super().__init__("; ".join(problems))


def new_book_id() -> str:
    # Upper-case UUID text, the form used as document key by the mobile app.
    return str(uuid.uuid4()).upper()


def _has_type(value: Any, expected: type) -> bool:
    if expected is int:
        return is_int(value)
    if expected is bool:
        return isinstance(value, bool)
    return isinstance(value, expected)


@dataclass(frozen=True)
class Book:
    """A single book in the reader's personal library."""

    author_name: str
    book_name: str
    total_pages: int
    read_pages: int
    review: int = 3
    is_completed: bool = False
    category: str = CATEGORIES[0]
    id: str = field(default_factory=new_book_id)

    def __str__(self) -> str:
        return f"{self.book_name} by {self.author_name}"

    @property
    def reading_progress(self) -> Optional[int]:
        """Percentage of pages read, rounded down; ``None`` when the page count is unknown."""
        if self.total_pages <= 0:
            return None
        return (self.read_pages * 100) // self.total_pages

    def with_changes(self, **changes: Any) -> "Book":
        if "id" in changes and changes["id"] != self.id:
            raise ValueError("A book's id cannot be changed.")
        return replace(self, **changes)

    def validate(self) -> None:
        """Check the rules for adding or editing a book.

        Raises ``BookValidationError`` listing every problem found.
        """
        problems: List[str] = []
        if not TextValidator.validate_name(self.author_name):
            problems.append("Author name cannot be empty.")
        if not TextValidator.validate_name(self.book_name):
            problems.append("Book name cannot be empty.")
        pages_ok = True
        if not BookFieldValidator.validate_pages(self.total_pages):
            problems.append("Total pages must be a non-negative integer.")
            pages_ok = False
        if not BookFieldValidator.validate_pages(self.read_pages):
            problems.append("Read pages must be a non-negative integer.")
            pages_ok = False
        if pages_ok and not BookFieldValidator.validate_progress(self.read_pages, self.total_pages):
            problems.append("Read pages cannot exceed total pages.")
        if not BookFieldValidator.validate_review(self.review):
            problems.append(f"Review must be between {MIN_REVIEW} and {MAX_REVIEW}.")
        if not isinstance(self.is_completed, bool):
            problems.append("Completion flag must be a boolean.")
        if not BookFieldValidator.validate_category(self.category):
            problems.append("Category cannot be empty.")
        if not isinstance(self.id, str) or not self.id:
            problems.append("Book id cannot be empty.")
        if problems:
            raise BookValidationError(problems)

    def to_document(self) -> Dict[str, Any]:
        return {
            "authorName": self.author_name,
            "bookName": self.book_name,
            "totalPages": self.total_pages,
            "readPages": self.read_pages,
            "review": self.review,
            "isCompleted": self.is_completed,
            "category": self.category,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "author_name": self.author_name,
            "book_name": self.book_name,
            "total_pages": self.total_pages,
            "read_pages": self.read_pages,
            "review": self.review,
            "is_completed": self.is_completed,
            "category": self.category,
            "reading_progress": self.reading_progress,
        }

    @staticmethod
    def from_document(doc_id: str, data: Any) -> Optional["Book"]:
        """Rebuild a book from a stored document.

        Every field must be present with its expected type; otherwise the
        document is rejected and ``None`` is returned. No defaults are filled in.
        """
        if not doc_id or not isinstance(data, dict):
            return None
        for key, expected in DOCUMENT_FIELDS.items():
            if key not in data or not _has_type(data[key], expected):
                return None
        return Book(
            id=doc_id,
            author_name=data["authorName"],
            book_name=data["bookName"],
            total_pages=data["totalPages"],
            read_pages=data["readPages"],
            review=data["review"],
            is_completed=data["isCompleted"],
            category=data["category"],
        )
