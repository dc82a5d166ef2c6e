from fastapi.testclient import TestClient
from typer.testing import CliRunner

import api
from config import settings
from main import app as cli_app

HEADERS = {"X-API-Key": settings.api_key}


def test_full_book_lifecycle(sqlite_settings):
    """Create, read, update, toggle and delete a book through the API on a SQLite library."""
    create_data = {
        "author_name": "Yuval Noah Harari",
        "book_name": "Sapiens",
        "total_pages": 464,
        "read_pages": 0,
        "category": "Psychology",
    }
    with TestClient(api.app) as client:
        response = client.post("/books", json=create_data, headers=HEADERS)
        assert response.status_code == 200
        book_id = response.json()["book"]["id"]

        response = client.put(f"/books/{book_id}", json={"read_pages": 232}, headers=HEADERS)
        assert response.status_code == 200

        response = client.post(f"/books/{book_id}/toggle", headers=HEADERS)
        assert response.json()["book"]["is_completed"] is True

    # A fresh process sees the same library.
    with TestClient(api.app) as client:
        book = client.get(f"/books/{book_id}").json()
        assert book["read_pages"] == 232
        assert book["reading_progress"] == 50
        assert book["is_completed"] is True
        assert book["sync_state"] == "confirmed"

        stats = client.get("/stats").json()
        assert stats["top_categories"] == {"Psychology": 1}

    result = CliRunner().invoke(cli_app, ["list"])
    assert "1. [x] Sapiens by Yuval Noah Harari - 50% Read" in result.stdout

    with TestClient(api.app) as client:
        assert client.delete(f"/books/{book_id}", headers=HEADERS).status_code == 200
        assert client.get("/books").json() == []
