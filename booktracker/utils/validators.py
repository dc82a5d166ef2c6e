from typing import Any, Iterable, Optional

CATEGORIES = [
    "Fiction",
    "Thriller",
    "Novel",
    "Romance",
    "Fantasy",
    "Mystery",
    "Horror",
    "Self-Improvement",
    "Psychology",
]

MIN_REVIEW = 1
MAX_REVIEW = 5


def is_int(value: Any) -> bool:
    """True for real integers. ``bool`` is an ``int`` subclass and does not count."""
    return isinstance(value, int) and not isinstance(value, bool)


class TextValidator:
    """Checks for the free-text fields of a book."""

    @staticmethod
    def validate_name(value: Optional[str]) -> bool:
        if not isinstance(value, str):
            return False
        return bool(value.strip())

    @staticmethod
    def is_numeric(text: Optional[str]) -> bool:
        """Form input check: non-empty and made only of decimal digits."""
        if not text:
            return False
        return all(ch in "0123456789" for ch in text)


class BookFieldValidator:
    """Checks for the numeric and enumerated fields of a book."""

    @staticmethod
    def validate_pages(value: Any) -> bool:
        return is_int(value) and value >= 0

    @staticmethod
    def validate_progress(read_pages: int, total_pages: int) -> bool:
        # Reading past the last page is rejected rather than clamped.
        return read_pages <= total_pages

    @staticmethod
    def validate_review(value: Any) -> bool:
        return is_int(value) and MIN_REVIEW <= value <= MAX_REVIEW

    @staticmethod
    def validate_category(value: Any, known: Optional[Iterable[str]] = None) -> bool:
        """A category is any non-empty string; pass ``known`` to restrict it to a set."""
        if not isinstance(value, str) or not value.strip():
            return False
        if known is not None:
            return value in set(known)
        return True
