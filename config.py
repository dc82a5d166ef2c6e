import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Application settings
    app_name: str = os.getenv("APP_NAME", "Book Tracker")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _flag("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Document store: memory | sqlite | firestore
    books_backend: str = os.getenv("BOOKS_BACKEND", "sqlite")
    books_collection: str = os.getenv("BOOKS_COLLECTION", "books")
    database_file: str = os.getenv("LIBRARY_DB_FILE", "books.db")

    # Cloud Firestore (REST)
    firestore_project_id: Optional[str] = os.getenv("FIRESTORE_PROJECT_ID")
    firestore_database: str = os.getenv("FIRESTORE_DATABASE", "(default)")
    firestore_api_key: Optional[str] = os.getenv("FIRESTORE_API_KEY")
    firestore_token: Optional[str] = os.getenv("FIRESTORE_TOKEN")
    firestore_timeout: float = float(os.getenv("FIRESTORE_TIMEOUT", "10"))
    firestore_poll_interval: float = float(os.getenv("FIRESTORE_POLL_INTERVAL", "5"))

    # Book store behaviour
    write_retries: int = int(os.getenv("BOOK_WRITE_RETRIES", "0"))
    write_backoff: float = float(os.getenv("BOOK_WRITE_BACKOFF", "0.5"))
    optimistic_updates: bool = _flag("BOOK_OPTIMISTIC_UPDATES", "False")

    # Statistics
    top_n: int = int(os.getenv("STATS_TOP_N", "5"))


settings = Settings()
