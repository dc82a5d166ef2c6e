import asyncio
import logging
from typing import Any, Dict, List, Optional, Set
from urllib.parse import quote

import httpx

from booktracker.services.document_store import (
    Document,
    DocumentStore,
    DocumentStoreError,
    ErrorCallback,
    SnapshotCallback,
    Subscription,
)
from booktracker.services.http_client import OptimizedHTTPClient

logger = logging.getLogger(__name__)

FIRESTORE_URL = "https://firestore.googleapis.com/v1"
PAGE_SIZE = 300


# ------------------------- Value encoding ------------------------- #
def encode_value(value: Any) -> Dict[str, Any]:
    """Convert a Python value into a Firestore REST ``Value``."""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        # int64 travels as a decimal string
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    raise TypeError(f"Cannot store value of type {type(value).__name__} in Firestore")


def encode_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: encode_value(value) for key, value in data.items()}


def decode_value(value: Dict[str, Any]) -> Any:
    """Convert a Firestore REST ``Value`` back into a Python value."""
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    # timestampValue, referenceValue, geoPointValue, bytesValue
    for raw in value.values():
        return raw
    return None


def decode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: decode_value(value) for key, value in fields.items()}


def document_id(name: str) -> str:
    """Last path segment of a full document name."""
    return name.rsplit("/", 1)[-1]


class FirestoreDocumentStore(DocumentStore):
    """Cloud Firestore collections over the REST API.

    The REST API has no streaming listener, so subscriptions poll the
    collection and deliver a snapshot whenever its contents changed.
    """

    def __init__(
        self,
        project_id: Optional[str],
        database: str = "(default)",
        api_key: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 10.0,
        poll_interval: float = 5.0,
        retries: int = 3,
        backoff: float = 0.5,
        http_client: Optional[OptimizedHTTPClient] = None,
    ) -> None:
        if not project_id:
            raise ValueError("Firestore project id is not configured (FIRESTORE_PROJECT_ID).")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive.")
        self.project_id = project_id
        self.database = database
        self.api_key = api_key
        self.token = token
        self.poll_interval = poll_interval
        self.retries = retries
        self.backoff = backoff
        self.base_url = f"{FIRESTORE_URL}/projects/{project_id}/databases/{database}/documents"
        self._owns_client = http_client is None
        self._http = http_client or OptimizedHTTPClient(timeout=timeout)
        self._pollers: Set[asyncio.Task] = set()

    def _collection_url(self, collection: str) -> str:
        return f"{self.base_url}/{quote(collection, safe='')}"

    def _document_url(self, collection: str, key: str) -> str:
        return f"{self._collection_url(collection)}/{quote(key, safe='')}"

    def _auth(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        if self.api_key:
            kwargs["params"] = {"key": self.api_key}
        if self.token:
            kwargs["headers"] = {"Authorization": f"Bearer {self.token}"}
        return kwargs

    async def _request(self, method: str, url: str, action: str, **kwargs) -> httpx.Response:
        request_kwargs = self._auth()
        params = dict(request_kwargs.pop("params", {}))
        params.update(kwargs.pop("params", {}))
        if params:
            request_kwargs["params"] = params
        request_kwargs.update(kwargs)
        try:
            response = await self._http.request_with_retry(
                method, url, retries=self.retries, backoff=self.backoff, **request_kwargs
            )
        except httpx.HTTPError as exc:
            raise DocumentStoreError(f"Firestore {action} failed: {exc}") from exc
        if response.status_code >= 400:
            raise DocumentStoreError(
                f"Firestore {action} failed: {response.status_code} - {response.text[:200]}"
            )
        return response

    # ------------------------- DocumentStore API ------------------------- #
    async def set(self, collection: str, key: str, data: Dict[str, Any]) -> None:
        # PATCH without an update mask replaces the whole document, creating it if needed.
        await self._request(
            "PATCH", self._document_url(collection, key), f"write of {collection}/{key}",
            json={"fields": encode_fields(data)},
        )
        logger.info("Firestore document written: %s/%s", collection, key)

    async def delete(self, collection: str, key: str) -> None:
        await self._request("DELETE", self._document_url(collection, key), f"delete of {collection}/{key}")
        logger.info("Firestore document deleted: %s/%s", collection, key)

    async def fetch_all(self, collection: str) -> List[Document]:
        documents: List[Document] = []
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"pageSize": PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            response = await self._request(
                "GET", self._collection_url(collection), f"fetch of {collection}", params=params
            )
            try:
                payload = response.json()
            except ValueError as exc:
                raise DocumentStoreError(f"Firestore fetch of {collection} returned invalid JSON") from exc
            for item in payload.get("documents", []):
                documents.append(Document(document_id(item["name"]), decode_fields(item.get("fields", {}))))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return documents

    async def subscribe(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        task = asyncio.create_task(self._poll(collection, on_snapshot, on_error))
        self._pollers.add(task)
        task.add_done_callback(self._pollers.discard)

        async def _release() -> None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        return Subscription(collection, _release)

    async def _poll(self, collection: str, on_snapshot: SnapshotCallback,
                    on_error: Optional[ErrorCallback]) -> None:
        last: Optional[List[Document]] = None
        while True:
            try:
                snapshot = await self.fetch_all(collection)
            except DocumentStoreError as exc:
                logger.error("Polling %s failed: %s", collection, exc)
                if on_error is not None:
                    self._deliver(collection, on_error, exc)
            else:
                if snapshot != last:
                    last = snapshot
                    self._deliver(collection, on_snapshot, snapshot)
            await asyncio.sleep(self.poll_interval)

    @staticmethod
    def _deliver(collection: str, callback, payload) -> None:
        # A failing listener must not stop the poller.
        try:
            callback(payload)
        except Exception:
            logger.exception("Listener of %s raised", collection)

    async def close(self) -> None:
        pollers = list(self._pollers)
        for task in pollers:
            task.cancel()
        if pollers:
            await asyncio.gather(*pollers, return_exceptions=True)
        if self._owns_client:
            await self._http.close()
