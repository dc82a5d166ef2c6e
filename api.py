import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from config import settings
from booktracker.book import Book, BookValidationError
from booktracker.services import get_document_store
from booktracker.stats import get_statistics
from booktracker.store import BookNotFoundError, BookStore, WriteResult
from booktracker.utils.validators import CATEGORIES, MAX_REVIEW, MIN_REVIEW

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # The store lives as long as the application: loaded and subscribed on start,
    # drained and unsubscribed on shutdown.
    remote = get_document_store()
    store = BookStore.from_settings(remote)
    try:
        await store.open()
        app.state.store = store
        logger.info("Book store ready (%s backend, %d books)", settings.books_backend, len(store))
        yield
    finally:
        try:
            await store.close()
        finally:
            await remote.close()


app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, lifespan=lifespan)


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that checks the API key of mutating requests."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_store(request: Request) -> BookStore:
    return request.app.state.store


# --- Models ---
class BookModel(BaseModel):
    id: str
    author_name: str
    book_name: str
    total_pages: int
    read_pages: int
    review: int
    is_completed: bool
    category: str
    reading_progress: int | None = None
    sync_state: str | None = None


class BookCreateModel(BaseModel):
    author_name: str
    book_name: str
    total_pages: int = Field(description="Total number of pages")
    read_pages: int = Field(default=0, description="Pages read so far")
    review: int = Field(default=3, description=f"Review from {MIN_REVIEW} to {MAX_REVIEW}")
    is_completed: bool = False
    category: str = CATEGORIES[0]


class UpdateBookModel(BaseModel):
    author_name: str | None = None
    book_name: str | None = None
    total_pages: int | None = None
    read_pages: int | None = None
    review: int | None = None
    is_completed: bool | None = None
    category: str | None = None


class WriteResultModel(BaseModel):
    operation: str
    book_id: str
    ok: bool
    error: str | None = None
    attempts: int = 1


class MutationResponse(BaseModel):
    book: BookModel
    result: WriteResultModel


class StatsModel(BaseModel):
    total_books: int
    unique_authors: int
    completed_books: int
    pages_read: int
    top_authors: Dict[str, int]
    top_categories: Dict[str, int]


# --- Helpers ---
def _book_model(store: BookStore, book: Book) -> BookModel:
    state = store.sync_state(book.id).value if book.id in store else None
    return BookModel(**book.to_dict(), sync_state=state)


def _check_category(category: Optional[str]) -> None:
    if category is not None and category not in CATEGORIES:
        raise HTTPException(
            status_code=422,
            detail=f"Unknown category '{category}'. Choose one of: {', '.join(CATEGORIES)}",
        )


def _mutation_response(store: BookStore, book: Book, result: WriteResult) -> MutationResponse:
    response = MutationResponse(book=_book_model(store, book), result=WriteResultModel(**result.to_dict()))
    if not result.ok:
        # The local change stands; report it together with the remote failure.
        raise HTTPException(
            status_code=502,
            detail={"message": "Remote write failed", **response.model_dump()},
        )
    return response


# --- Health ---
@app.get("/health")
async def health(store: BookStore = Depends(get_store)):
    """Lightweight health endpoint: backend, subscription status and collection size."""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": settings.app_version,
        "backend": settings.books_backend,
        "subscribed": store.subscribed,
        "total_books": len(store),
        "pending_operations": store.pending_operations,
    }


@app.get("/categories", response_model=List[str])
async def list_categories():
    return CATEGORIES


# --- Books ---
@app.get("/books", response_model=List[BookModel])
async def list_books(
    author: Optional[str] = Query(None, description="Only books by this author"),
    category: Optional[List[str]] = Query(None, description="Only these categories"),
    store: BookStore = Depends(get_store),
):
    """List the books in collection order, optionally filtered."""
    return [_book_model(store, book) for book in store.filter(author=author, categories=category)]


@app.get("/books/{book_id}", response_model=BookModel)
async def get_book(book_id: str, store: BookStore = Depends(get_store)):
    book = store.get(book_id)
    if book is None:
        raise HTTPException(status_code=404, detail="Book not found.")
    return _book_model(store, book)


@app.post("/books", response_model=MutationResponse, dependencies=[Depends(get_api_key)])
async def add_book(payload: BookCreateModel, store: BookStore = Depends(get_store)):
    """Add a book. It is in the collection right away; the response waits for the remote write."""
    _check_category(payload.category)
    book = Book(**payload.model_dump())
    try:
        task = store.add(book)
    except BookValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _mutation_response(store, book, await task)


@app.put("/books/{book_id}", response_model=MutationResponse, dependencies=[Depends(get_api_key)])
async def update_book(book_id: str, update: UpdateBookModel, store: BookStore = Depends(get_store)):
    """Change some fields of a book. The whole document is written again."""
    changes = update.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Provide at least one field to update.")
    _check_category(changes.get("category"))
    book = store.get(book_id)
    if book is None:
        raise HTTPException(status_code=404, detail="Book not found.")
    edited = book.with_changes(**changes)
    try:
        task = store.update(edited)
    except BookValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _mutation_response(store, edited, await task)


@app.post("/books/{book_id}/toggle", response_model=MutationResponse, dependencies=[Depends(get_api_key)])
async def toggle_book(book_id: str, store: BookStore = Depends(get_store)):
    """Flip the completed flag of a book."""
    try:
        task = store.toggle_completion(book_id)
    except BookNotFoundError:
        raise HTTPException(status_code=404, detail="Book not found.")
    toggled = store.get(book_id)
    result = await task
    return _mutation_response(store, store.get(book_id) or toggled, result)


@app.delete("/books/{book_id}", response_model=MutationResponse, dependencies=[Depends(get_api_key)])
async def delete_book(book_id: str, store: BookStore = Depends(get_store)):
    """Remove a book from the collection and delete its document."""
    book = store.get(book_id)
    if book is None:
        raise HTTPException(status_code=404, detail="Book not found.")
    task = store.delete_by_id(book_id)
    return _mutation_response(store, book, await task)


# --- Statistics ---
@app.get("/stats", response_model=StatsModel)
async def get_library_stats(
    top: int = Query(settings.top_n, ge=0, description="How many authors/categories to rank"),
    store: BookStore = Depends(get_store),
):
    """Reading statistics, with the most read authors and categories."""
    return StatsModel(**get_statistics(store.books, top_n=top))
